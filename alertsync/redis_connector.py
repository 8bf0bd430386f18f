#!/usr/bin/env python3
"""
Redis connector for the reconciler's runtime configuration overrides.

Only opened when DYNAMIC_CONFIG_ENABLED=true. Password handling mirrors the
alerts DB pool: CURRENT first, then NEXT, or no AUTH at all when neither is
set.
"""

from typing import Optional
import logging
import redis

from alertsync.postgres_connector import password_candidates


def get_redis_client(
    *,
    host: str,
    port: int,
    tls_enabled: bool = False,
    ca_cert_path: Optional[str] = None,
    password_current: Optional[str] = None,
    password_next: Optional[str] = None,
    max_connections: int = 4,
    logger: Optional[logging.Logger] = None,
) -> redis.Redis:
    log = logger or logging.getLogger(__name__)

    pool_kwargs = {
        'host': host,
        'port': port,
        'decode_responses': True,
        'socket_connect_timeout': 5,
        'socket_keepalive': True,
        'max_connections': max_connections,
    }
    if tls_enabled:
        pool_kwargs['connection_class'] = redis.SSLConnection
        pool_kwargs['ssl_cert_reqs'] = 'required'
        if ca_cert_path:
            pool_kwargs['ssl_ca_certs'] = ca_cert_path

    def _connect(password: Optional[str]) -> redis.Redis:
        client = redis.Redis(connection_pool=redis.ConnectionPool(password=password, **pool_kwargs))
        client.ping()
        return client

    candidates = password_candidates(password_current, password_next)
    if not candidates:
        log.info(f"Connecting to config Redis {host}:{port} (tls={tls_enabled}, no AUTH)")
        return _connect(None)

    last_error: Optional[Exception] = None
    for label, password in candidates:
        log.info(f"Connecting to config Redis {host}:{port} (tls={tls_enabled}, {label} password)")
        try:
            return _connect(password)
        except Exception as e:
            last_error = e
            log.warning(f"Config Redis rejected {label} password: {e}")

    if len(candidates) == 1 and last_error is not None:
        raise last_error

    raise RuntimeError(f"Could not connect to config Redis at {host}:{port}") from last_error
