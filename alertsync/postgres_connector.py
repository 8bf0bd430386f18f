#!/usr/bin/env python3
"""
PostgreSQL connector for the alert store and tag catalog.

Both services share one ThreadedConnectionPool per process. During a
credential rotation Vault carries a CURRENT and a NEXT password; the pool is
built with whichever one the server accepts, CURRENT first.
"""

from typing import List, Optional, Tuple
import logging
import psycopg2
import psycopg2.pool


def password_candidates(
    password_current: Optional[str],
    password_next: Optional[str],
) -> List[Tuple[str, str]]:
    """(label, password) pairs in the order they should be tried."""
    return [
        (label, password)
        for label, password in (('CURRENT', password_current), ('NEXT', password_next))
        if password
    ]


def get_postgres_pool(
    *,
    host: str,
    port: int,
    dbname: str,
    user: str,
    password_current: Optional[str] = None,
    password_next: Optional[str] = None,
    minconn: int = 1,
    maxconn: int = 5,
    sslmode: Optional[str] = None,
    sslrootcert: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> psycopg2.pool.ThreadedConnectionPool:
    """
    Open and ping a pool for the alerts database.

    Raises:
        The driver error when the only password given is rejected
        RuntimeError: When every candidate password fails
    """
    log = logger or logging.getLogger(__name__)

    dsn_kwargs = {'host': host, 'port': port, 'dbname': dbname, 'user': user}
    if sslmode:
        dsn_kwargs['sslmode'] = sslmode
    if sslrootcert:
        dsn_kwargs['sslrootcert'] = sslrootcert

    candidates = password_candidates(password_current, password_next)
    last_error: Optional[Exception] = None

    for label, password in candidates:
        log.info(
            f"Opening alerts DB pool {user}@{host}:{port}/{dbname} "
            f"(size {minconn}-{maxconn}, {label} password)"
        )
        try:
            pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=minconn,
                maxconn=maxconn,
                password=password,
                **dsn_kwargs,
            )
            ping_pool(pool)
            return pool
        except Exception as e:
            last_error = e
            log.warning(f"Alerts DB rejected {label} password: {e}")

    if len(candidates) == 1 and last_error is not None:
        raise last_error

    raise RuntimeError(f"Could not open alerts DB pool at {host}:{port}/{dbname}") from last_error


def ping_pool(pool) -> None:
    """Borrow one connection and run SELECT 1. Raises on failure."""
    conn = pool.getconn()
    try:
        with conn.cursor() as cur:
            cur.execute('SELECT 1')
    finally:
        pool.putconn(conn)
