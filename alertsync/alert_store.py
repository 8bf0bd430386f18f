#!/usr/bin/env python3
"""
=====================================================================
ALERTSYNC Alert Store
=====================================================================
PostgreSQL persistence for correlated alerts.

One row per (fingerprint, service) pair, keyed by the composite id
"<fingerprint>:<service_id>". Writes are single statements, so every
operation is atomic on its own and only takes row-level locks.

Two independent axes live on each row:
- Reported: present or pruned. Driven only by the reconciler through
  upsert() and delete_not_in().
- Dismissed: driven only by users through dismiss() / undismiss().

delete_not_in() ignores is_dismissed: a dismissed alert the
source stops reporting is removed like any other.
=====================================================================
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

import psycopg2
import psycopg2.extras
from prometheus_client import Histogram

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_DB_LATENCY = Histogram(
    'alertsync_store_latency_ms',
    'Alert store statement latency in milliseconds',
    ['operation'],
    buckets=[1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000]
)

# =====================================================================
# SQL
# =====================================================================

CREATE_ALERTS_TABLE = """
CREATE TABLE IF NOT EXISTS alerts (
    id           TEXT PRIMARY KEY,
    status       TEXT NOT NULL DEFAULT '',
    tag          TEXT NOT NULL DEFAULT '',
    starts_at    TEXT NOT NULL DEFAULT '',
    updated_at   TEXT NOT NULL DEFAULT '',
    alert_url    TEXT,
    alert_name   TEXT,
    summary      TEXT,
    runbook_url  TEXT,
    service_id   INTEGER NOT NULL,
    is_dismissed BOOLEAN NOT NULL DEFAULT FALSE,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

CREATE_ALERTS_SERVICE_INDEX = "CREATE INDEX IF NOT EXISTS idx_alerts_service_id ON alerts (service_id)"

# is_dismissed and created_at are never part of the update set.
UPSERT_ALERT = """
INSERT INTO alerts
    (id, status, tag, starts_at, updated_at, alert_url, alert_name, summary, runbook_url, service_id)
VALUES
    (%(id)s, %(status)s, %(tag)s, %(starts_at)s, %(updated_at)s, %(alert_url)s,
     %(alert_name)s, %(summary)s, %(runbook_url)s, %(service_id)s)
ON CONFLICT (id) DO UPDATE SET
    status = EXCLUDED.status,
    tag = EXCLUDED.tag,
    starts_at = EXCLUDED.starts_at,
    updated_at = EXCLUDED.updated_at,
    alert_url = EXCLUDED.alert_url,
    alert_name = EXCLUDED.alert_name,
    summary = EXCLUDED.summary,
    runbook_url = EXCLUDED.runbook_url,
    service_id = EXCLUDED.service_id
"""

SELECT_ALL_ALERTS = "SELECT * FROM alerts ORDER BY created_at DESC, id ASC"
SELECT_ALERT = "SELECT * FROM alerts WHERE id = %s"
SET_DISMISSED = "UPDATE alerts SET is_dismissed = %s WHERE id = %s RETURNING *"
DELETE_ALL_ALERTS = "DELETE FROM alerts"
DELETE_ALERTS_NOT_IN = "DELETE FROM alerts WHERE NOT (id = ANY(%s))"

# Source-derived columns, in API order.
SOURCE_FIELDS = (
    'id', 'status', 'tag', 'starts_at', 'updated_at', 'alert_url',
    'alert_name', 'summary', 'runbook_url', 'service_id',
)


def to_api_alert(row: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a stored row to the camelCase shape served by the API."""
    created_at = row.get('created_at')
    if isinstance(created_at, datetime):
        created_at = created_at.isoformat()
    return {
        'id': row['id'],
        'status': row.get('status'),
        'tag': row.get('tag'),
        'startsAt': row.get('starts_at'),
        'updatedAt': row.get('updated_at'),
        'alertUrl': row.get('alert_url'),
        'alertName': row.get('alert_name'),
        'summary': row.get('summary'),
        'runbookUrl': row.get('runbook_url'),
        'serviceId': row.get('service_id'),
        'createdAt': created_at,
        'isDismissed': bool(row.get('is_dismissed')),
    }


class AlertStore:
    """Durable, idempotent alert persistence over a psycopg2 connection pool."""

    def __init__(self, db_pool):
        self.db_pool = db_pool

    def _run(self, operation: str, fn: Callable[[Any], Any]) -> Any:
        """Run fn(conn) on a pooled connection, committing on success."""
        conn = None
        start_time = time.time()
        try:
            conn = self.db_pool.getconn()
            result = fn(conn)
            conn.commit()
            return result
        except Exception:
            if conn:
                try:
                    conn.rollback()
                except psycopg2.Error as rollback_error:
                    logger.warning(f"Rollback failed during {operation}: {rollback_error}")
            raise
        finally:
            if conn:
                self.db_pool.putconn(conn)
            METRIC_DB_LATENCY.labels(operation=operation).observe((time.time() - start_time) * 1000)

    def init_schema(self) -> None:
        """Create the alerts table and its index if missing."""
        def _create(conn):
            with conn.cursor() as cursor:
                cursor.execute(CREATE_ALERTS_TABLE)
                cursor.execute(CREATE_ALERTS_SERVICE_INDEX)

        self._run('init_schema', _create)
        logger.info("Alerts schema ready")

    def upsert(self, record: Dict[str, Any]) -> int:
        """
        Insert or update one alert by id.

        Only source-derived columns are written; is_dismissed and created_at
        survive every update.

        Returns:
            Number of rows changed (1 on success)

        Raises:
            psycopg2.Error: On any database failure (already rolled back)
        """
        params = {field: record.get(field) for field in SOURCE_FIELDS}
        params['summary'] = record.get('summary') or None
        params['runbook_url'] = record.get('runbook_url') or None

        def _upsert(conn):
            with conn.cursor() as cursor:
                cursor.execute(UPSERT_ALERT, params)
                return cursor.rowcount

        return self._run('upsert', _upsert)

    def get_all(self) -> List[Dict[str, Any]]:
        """Snapshot of every stored alert, newest first."""
        def _select(conn):
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(SELECT_ALL_ALERTS)
                return [dict(row) for row in cursor.fetchall()]

        return self._run('get_all', _select)

    def get(self, alert_id: str) -> Optional[Dict[str, Any]]:
        def _select(conn):
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(SELECT_ALERT, (alert_id,))
                row = cursor.fetchone()
                return dict(row) if row else None

        return self._run('get', _select)

    def _set_dismissed(self, alert_id: str, dismissed: bool) -> Optional[Dict[str, Any]]:
        def _update(conn):
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(SET_DISMISSED, (dismissed, alert_id))
                row = cursor.fetchone()
                return dict(row) if row else None

        return self._run('dismiss' if dismissed else 'undismiss', _update)

    def dismiss(self, alert_id: str) -> Optional[Dict[str, Any]]:
        """Mark an alert dismissed. Returns the row, or None if it does not exist."""
        row = self._set_dismissed(alert_id, True)
        if row is None:
            logger.info(f"Dismiss requested for unknown alert {alert_id}")
        else:
            logger.info(f"Dismissed alert {alert_id}")
        return row

    def undismiss(self, alert_id: str) -> Optional[Dict[str, Any]]:
        """Clear the dismissed flag. Returns the row, or None if it does not exist."""
        row = self._set_dismissed(alert_id, False)
        if row is None:
            logger.info(f"Undismiss requested for unknown alert {alert_id}")
        else:
            logger.info(f"Undismissed alert {alert_id}")
        return row

    def delete_not_in(self, keep_ids: Iterable[str]) -> int:
        """
        Delete every alert whose id is not in keep_ids.

        An empty keep_ids deletes every row. Callers must only pass an empty
        set after a fetch that succeeded with zero results.

        Returns:
            Number of rows deleted

        Raises:
            psycopg2.Error: On any database failure (already rolled back)
        """
        ids = sorted(set(keep_ids))

        def _delete(conn):
            with conn.cursor() as cursor:
                if not ids:
                    cursor.execute(DELETE_ALL_ALERTS)
                else:
                    cursor.execute(DELETE_ALERTS_NOT_IN, (ids,))
                return cursor.rowcount

        return self._run('delete_not_in', _delete)
