# =====================================================================
# ALERTSYNC Pytest Configuration and Fixtures
# =====================================================================
# Shared fixtures: mocked PostgreSQL/Redis/Vault, sample Grafana alerts,
# and in-memory fakes of the reconciler's collaborators.
# =====================================================================

import threading
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import MagicMock, Mock
import redis
import psycopg2
import psycopg2.extensions
from prometheus_client import REGISTRY


# --- Prometheus Metrics Cleanup ---

@pytest.fixture(autouse=True, scope="function")
def cleanup_prometheus_metrics():
    """
    Unregister per-app Flask exporter collectors after each test.

    PrometheusMetrics registers its collectors every time create_app() runs,
    which would raise 'Duplicated timeseries in CollectorRegistry' on the
    next test. Module-level alertsync_ metrics are created once and kept.
    """
    yield

    collectors_to_remove = []
    for collector in list(REGISTRY._collector_to_names.keys()):
        names = REGISTRY._collector_to_names.get(collector, set())
        if any(name.startswith('flask_') for name in names):
            collectors_to_remove.append(collector)

    for collector in collectors_to_remove:
        try:
            REGISTRY.unregister(collector)
        except KeyError:
            pass


# --- Mock Configuration ---

@pytest.fixture
def mock_config():
    """Mock configuration object shared by both services"""
    config = Mock()

    config.POD_NAME = "test-reconciler-01"
    config.GRAFANA_URL = "https://grafana.example.com"
    config.GRAFANA_API_KEY = None
    config.ALERT_FETCH_TIMEOUT = 30
    config.RECONCILE_INTERVAL = 600
    config.RECONCILE_MAX_WORKERS = 4

    config.DB_HOST = "localhost"
    config.DB_PORT = 5432
    config.DB_NAME = "alertsync"
    config.DB_USER = "alertsync"
    config.DB_POOL_MIN_CONN = 1
    config.DB_POOL_MAX_CONN = 4

    config.VAULT_ADDR = "http://localhost:8200"
    config.VAULT_ROLE_ID = "test-role"
    config.VAULT_SECRET_ID_FILE = "/tmp/vault_secret_id"
    config.VAULT_SECRETS_PATH = "secret/alertsync"
    config.VAULT_TOKEN_RENEW_THRESHOLD = 3600
    config.VAULT_RENEW_CHECK_INTERVAL = 300

    return config


@pytest.fixture
def mock_secrets():
    """Mock secrets object"""
    return {
        "DB_USER": "alertsync",
        "DB_PASS_CURRENT": "db_password",
        "DB_PASS_NEXT": None,
        "GRAFANA_API_KEY": "glsa_test_token",
        "REDIS_PASS": "redis_password",
        "API_KEY": "test-api-key-123",
    }


@pytest.fixture
def mock_redis_client():
    """Mock Redis client"""
    client = MagicMock(spec=redis.Redis)
    client.ping.return_value = True
    client.get.return_value = None
    client.set.return_value = True
    client.scan_iter.return_value = iter([])
    return client


@pytest.fixture
def mock_postgres_cursor():
    cursor = MagicMock(spec=psycopg2.extensions.cursor)
    cursor.fetchall.return_value = []
    cursor.fetchone.return_value = None
    cursor.rowcount = 0
    return cursor


@pytest.fixture
def mock_postgres_conn(mock_postgres_cursor):
    """Mock PostgreSQL connection"""
    conn = MagicMock(spec=psycopg2.extensions.connection)
    conn.cursor.return_value.__enter__ = Mock(return_value=mock_postgres_cursor)
    conn.cursor.return_value.__exit__ = Mock(return_value=False)
    conn.commit.return_value = None
    return conn


@pytest.fixture
def mock_postgres_pool(mock_postgres_conn):
    """Mock PostgreSQL connection pool"""
    pool = MagicMock()
    pool.getconn.return_value = mock_postgres_conn
    pool.putconn.return_value = None
    return pool


@pytest.fixture
def mock_vault_client():
    """Mock Vault client"""
    vault = MagicMock()
    vault.is_authenticated.return_value = True
    vault.auth.approle.login.return_value = {
        "auth": {"client_token": "test-token", "lease_duration": 7200}
    }
    vault.secrets.kv.v2.read_secret_version.return_value = {
        "data": {
            "data": {
                "DB_PASS_CURRENT": "db_password",
                "DB_PASS_NEXT": "db_password_next",
                "GRAFANA_API_KEY": "glsa_vault_token",
                "REDIS_PASS": "redis_password",
                "API_KEY": "test-api-key-123",
            }
        }
    }
    vault.auth.token.lookup_self.return_value = {"data": {"ttl": 7200, "renewable": True}}
    vault.auth.token.renew_self.return_value = {"auth": {"lease_duration": 7200}}
    return vault


# --- Sample Data ---

def make_grafana_alert(fingerprint, tag=None, state="active", **overrides):
    """Grafana Alertmanager v2 alert object."""
    labels = {"alertname": f"Alert {fingerprint}"}
    if tag is not None:
        labels["tag"] = tag
    alert = {
        "fingerprint": fingerprint,
        "status": {"state": state, "silencedBy": [], "inhibitedBy": []},
        "labels": labels,
        "annotations": {"summary": f"Summary of {fingerprint}"},
        "startsAt": "2025-11-08T12:00:00.123456789Z",
        "updatedAt": "2025-11-08T12:05:00Z",
        "endsAt": "2025-11-08T12:09:00Z",
        "generatorURL": f"https://grafana.example.com/alerting/grafana/{fingerprint}/view",
    }
    alert.update(overrides)
    return alert


@pytest.fixture
def grafana_alert():
    return make_grafana_alert


@pytest.fixture
def sample_grafana_alerts():
    """Two tagged alerts and one untagged alert"""
    return [
        make_grafana_alert("A", tag="db"),
        make_grafana_alert("B", tag="web"),
        make_grafana_alert("C"),
    ]


# --- In-memory fakes ---

class FakeTagCatalog:
    """Tag catalog over a {tag: [service_id, ...]} mapping."""

    def __init__(self, mapping=None, failing_tags=(), list_error=None):
        self.mapping = dict(mapping or {})
        self.failing_tags = set(failing_tags)
        self.list_error = list_error
        self.resolve_calls = []

    def list_all_tag_names(self):
        if self.list_error is not None:
            raise self.list_error
        return sorted(self.mapping)

    def resolve_service_ids(self, tag_name):
        self.resolve_calls.append(tag_name)
        if tag_name in self.failing_tags:
            raise psycopg2.OperationalError(f"lookup failed for {tag_name}")
        return list(self.mapping.get(tag_name, []))


class FakeAlertSource:
    """Alert source returning a fixed list, or raising a fixed error."""

    def __init__(self, alerts=None, error=None):
        self.alerts = list(alerts or [])
        self.error = error
        self.calls = []

    def fetch_alerts(self, tag_names):
        self.calls.append(list(tag_names))
        if self.error is not None:
            raise self.error
        return list(self.alerts)


class FakeAlertStore:
    """
    In-memory AlertStore with the same observable semantics: upsert keeps
    is_dismissed and created_at, delete_not_in ignores is_dismissed, and an
    empty keep-set deletes everything.
    """

    def __init__(self, fail_upsert_ids=(), fail_prune=False):
        self.rows = {}
        self.fail_upsert_ids = set(fail_upsert_ids)
        self.fail_prune = fail_prune
        self.upsert_calls = []
        self.prune_calls = []
        self.lock = threading.Lock()
        self._clock = datetime(2025, 11, 8, 12, 0, tzinfo=timezone.utc)

    def upsert(self, record):
        with self.lock:
            self.upsert_calls.append(record['id'])
            if record['id'] in self.fail_upsert_ids:
                raise psycopg2.OperationalError(f"upsert failed for {record['id']}")
            existing = self.rows.get(record['id'])
            row = dict(record)
            if existing is None:
                self._clock += timedelta(seconds=1)
                row['is_dismissed'] = False
                row['created_at'] = self._clock
            else:
                row['is_dismissed'] = existing['is_dismissed']
                row['created_at'] = existing['created_at']
            self.rows[record['id']] = row
            return 1

    def get_all(self):
        with self.lock:
            rows = sorted(self.rows.values(), key=lambda r: r['id'])
            rows.sort(key=lambda r: r['created_at'], reverse=True)
            return [dict(r) for r in rows]

    def get(self, alert_id):
        row = self.rows.get(alert_id)
        return dict(row) if row else None

    def _set_dismissed(self, alert_id, dismissed):
        with self.lock:
            row = self.rows.get(alert_id)
            if row is None:
                return None
            row['is_dismissed'] = dismissed
            return dict(row)

    def dismiss(self, alert_id):
        return self._set_dismissed(alert_id, True)

    def undismiss(self, alert_id):
        return self._set_dismissed(alert_id, False)

    def delete_not_in(self, keep_ids):
        with self.lock:
            keep = set(keep_ids)
            self.prune_calls.append(keep)
            if self.fail_prune:
                raise psycopg2.OperationalError("prune failed")
            doomed = [alert_id for alert_id in self.rows if alert_id not in keep]
            for alert_id in doomed:
                del self.rows[alert_id]
            return len(doomed)


@pytest.fixture
def fake_store():
    return FakeAlertStore()
