#!/usr/bin/env python3
"""
=====================================================================
ALERTSYNC Reconciler Service
=====================================================================
Long-running worker that keeps the alerts table in line with what the
external alerting system (Grafana) currently reports.

Every RECONCILE_INTERVAL seconds (and once at startup) it:
- Pulls the active alerts for every known tag
- Fans each alert out to the services carrying its tag
- Upserts the resulting records
- Prunes records the source no longer reports

Operational features:
- Vault secrets with background token renewal (or env fallback)
- PostgreSQL pool with CURRENT/NEXT password rotation
- Optional Redis-backed runtime overrides of interval and fetch timeout
- Prometheus metrics server and JSON health endpoint
- SIGHUP triggers an immediate cycle (dropped if one is running)
- Graceful shutdown on SIGTERM/SIGINT
=====================================================================
"""

import os
import sys
import json
import logging
import signal
import threading
import uuid
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, Optional

from prometheus_client import start_http_server

from alertsync.alert_source import GrafanaAlertSource
from alertsync.alert_store import AlertStore
from alertsync.dynamic_config import DynamicConfig
from alertsync.logging_utils import setup_json_logging
from alertsync.postgres_connector import get_postgres_pool, ping_pool
from alertsync.reconciler import AlertReconciler
from alertsync.redis_connector import get_redis_client
from alertsync.tag_catalog import TagCatalog
from alertsync.vault_secrets import fetch_secrets, start_vault_token_renewal

SERVICE_NAME = "alertsync-reconciler"
SERVICE_VERSION = "1.0"

logger = logging.getLogger(__name__)

# =====================================================================
# CONFIGURATION
# =====================================================================

class Config:
    """Service configuration loaded from environment variables."""

    def __init__(self):
        try:
            # Service Identity
            self.POD_NAME = os.environ.get('POD_NAME', f"reconciler-{uuid.uuid4().hex[:6]}")
            self.METRICS_PORT = int(os.environ.get('METRICS_PORT_RECONCILER', 8095))
            self.HEALTH_PORT = int(os.environ.get('HEALTH_PORT_RECONCILER', 8096))
            self.LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

            # Reconcile Config
            self.RECONCILE_INTERVAL = int(os.environ.get('RECONCILE_INTERVAL', 600))
            self.ALERT_FETCH_TIMEOUT = float(os.environ.get('ALERT_FETCH_TIMEOUT', 30))
            self.RECONCILE_MAX_WORKERS = int(os.environ.get('RECONCILE_MAX_WORKERS', 4))
            self.SHUTDOWN_TIMEOUT = float(os.environ.get('RECONCILE_SHUTDOWN_TIMEOUT', 60))

            # Grafana Config
            self.GRAFANA_URL = os.environ.get('GRAFANA_URL')
            self.GRAFANA_API_KEY = os.environ.get('GRAFANA_API_KEY')

            # PostgreSQL Config
            self.DB_HOST = os.environ.get('DB_HOST', 'localhost')
            self.DB_PORT = int(os.environ.get('DB_PORT', 5432))
            self.DB_NAME = os.environ.get('DB_NAME', 'alertsync')
            self.DB_USER = os.environ.get('DB_USER', 'alertsync')
            self.DB_TLS_ENABLED = os.environ.get('DB_TLS_ENABLED', 'false').lower() == 'true'
            self.DB_TLS_CA_CERT_PATH = os.environ.get('DB_TLS_CA_CERT_PATH')
            self.DB_POOL_MIN_CONN = int(os.environ.get('DB_POOL_MIN_CONN', 1))
            self.DB_POOL_MAX_CONN = int(os.environ.get('DB_POOL_MAX_CONN', 8))

            # Dynamic Config (Redis)
            self.DYNAMIC_CONFIG_ENABLED = os.environ.get('DYNAMIC_CONFIG_ENABLED', 'false').lower() == 'true'
            self.DYNAMIC_CONFIG_PREFIX = os.environ.get('DYNAMIC_CONFIG_PREFIX', 'alertsync:config')
            self.REDIS_HOST = os.environ.get('REDIS_HOST', 'localhost')
            self.REDIS_PORT = int(os.environ.get('REDIS_PORT', 6379))
            self.REDIS_TLS_ENABLED = os.environ.get('REDIS_TLS_ENABLED', 'false').lower() == 'true'
            self.REDIS_CA_CERT_PATH = os.environ.get('REDIS_CA_CERT_PATH')

            # Vault Config
            self.VAULT_ADDR = os.environ.get('VAULT_ADDR')
            self.VAULT_ROLE_ID = os.environ.get('VAULT_ROLE_ID')
            self.VAULT_SECRET_ID_FILE = os.environ.get('VAULT_SECRET_ID_FILE',
                                                       '/etc/alertsync/secrets/vault_secret_id')
            self.VAULT_SECRETS_PATH = os.environ.get('VAULT_SECRETS_PATH', 'secret/alertsync')
            self.VAULT_TOKEN_RENEW_THRESHOLD = int(os.environ.get('VAULT_TOKEN_RENEW_THRESHOLD', 3600))
            self.VAULT_RENEW_CHECK_INTERVAL = int(os.environ.get('VAULT_RENEW_CHECK_INTERVAL', 300))

            # Validate
            self._validate()

        except Exception as e:
            logger.error(f"FATAL: Configuration error: {e}")
            sys.exit(1)

    def _validate(self):
        """Validate critical configuration values."""
        for name in ('METRICS_PORT', 'HEALTH_PORT', 'DB_PORT'):
            port = getattr(self, name)
            if port < 1 or port > 65535:
                raise ValueError(f"{name} invalid: {port}")

        if self.METRICS_PORT == self.HEALTH_PORT:
            raise ValueError(f"METRICS_PORT and HEALTH_PORT must differ (both {self.METRICS_PORT})")

        if self.RECONCILE_INTERVAL < 1:
            raise ValueError(f"RECONCILE_INTERVAL too low: {self.RECONCILE_INTERVAL}")

        if self.ALERT_FETCH_TIMEOUT <= 0:
            raise ValueError(f"ALERT_FETCH_TIMEOUT must be positive: {self.ALERT_FETCH_TIMEOUT}")

        if self.RECONCILE_MAX_WORKERS < 1:
            raise ValueError(f"RECONCILE_MAX_WORKERS too low: {self.RECONCILE_MAX_WORKERS}")

        if self.DB_POOL_MIN_CONN < 1 or self.DB_POOL_MAX_CONN < self.DB_POOL_MIN_CONN:
            raise ValueError(
                f"DB pool sizes invalid: min={self.DB_POOL_MIN_CONN}, max={self.DB_POOL_MAX_CONN}"
            )

        if bool(self.VAULT_ADDR) != bool(self.VAULT_ROLE_ID):
            raise ValueError("VAULT_ADDR and VAULT_ROLE_ID must be set together")

# =====================================================================
# CONNECTIONS
# =====================================================================

def connect_to_postgres(config: Config, secrets: Dict[str, Optional[str]]):
    """Create the PostgreSQL pool. Exits the process on failure."""
    try:
        return get_postgres_pool(
            host=config.DB_HOST,
            port=config.DB_PORT,
            dbname=config.DB_NAME,
            user=secrets.get('DB_USER') or config.DB_USER,
            password_current=secrets.get('DB_PASS_CURRENT'),
            password_next=secrets.get('DB_PASS_NEXT'),
            minconn=config.DB_POOL_MIN_CONN,
            maxconn=config.DB_POOL_MAX_CONN,
            sslmode='require' if config.DB_TLS_ENABLED else None,
            sslrootcert=config.DB_TLS_CA_CERT_PATH,
            logger=logger,
        )
    except Exception as e:
        logger.error(f"FATAL: Could not create PostgreSQL pool: {e}", exc_info=True)
        sys.exit(1)


def init_dynamic_config(config: Config, secrets: Dict[str, Optional[str]]) -> Optional[DynamicConfig]:
    """Connect DynamicConfig when enabled. Failures fall back to static config."""
    if not config.DYNAMIC_CONFIG_ENABLED:
        return None
    try:
        redis_client = get_redis_client(
            host=config.REDIS_HOST,
            port=config.REDIS_PORT,
            tls_enabled=config.REDIS_TLS_ENABLED,
            ca_cert_path=config.REDIS_CA_CERT_PATH,
            password_current=secrets.get('REDIS_PASS'),
            logger=logger,
        )
        dyn = DynamicConfig(redis_client, prefix=config.DYNAMIC_CONFIG_PREFIX)
        logger.info("Dynamic config enabled for reconciler")
        return dyn
    except Exception as e:
        logger.warning(f"Dynamic config unavailable; using static settings: {e}")
        return None


def make_interval_fn(config: Config, dyn: Optional[DynamicConfig]):
    """Current reconcile interval: Redis override, else RECONCILE_INTERVAL."""
    def interval_fn() -> float:
        if dyn is None:
            return config.RECONCILE_INTERVAL
        return dyn.get_int('reconcile_interval', config.RECONCILE_INTERVAL)
    return interval_fn


def make_timeout_fn(config: Config, dyn: Optional[DynamicConfig]):
    """Current fetch timeout: Redis override, else ALERT_FETCH_TIMEOUT."""
    def timeout_fn() -> float:
        if dyn is None:
            return config.ALERT_FETCH_TIMEOUT
        return dyn.get_float('alert_fetch_timeout', config.ALERT_FETCH_TIMEOUT)
    return timeout_fn

# =====================================================================
# HEALTH CHECK HTTP SERVER
# =====================================================================

class HealthCheckHandler(BaseHTTPRequestHandler):
    """Simple HTTP handler for health checks."""

    health_check_fn = None

    def do_GET(self):
        if self.path == '/health':
            try:
                is_healthy, status_code, response = self.health_check_fn()

                self.send_response(status_code)
                self.send_header('Content-Type', 'application/json')
                self.end_headers()
                self.wfile.write(json.dumps(response).encode())

            except Exception as e:
                self.send_response(503)
                self.send_header('Content-Type', 'application/json')
                self.end_headers()
                self.wfile.write(json.dumps({
                    "status": "unhealthy",
                    "error": str(e)
                }).encode())
        else:
            self.send_response(404)
            self.end_headers()

    def log_message(self, format, *args):
        pass  # Suppress default logging


def build_health_check(config: Config, db_pool, reconciler: Optional[AlertReconciler]):
    """
    Health is the database being reachable. The last cycle outcome is
    reported for operators but does not fail the check: a source outage
    is not something a restart fixes.
    """

    def health_check():
        body: Dict[str, Any] = {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "pod": config.POD_NAME,
        }

        if reconciler is None:
            body["reconciler"] = "idle (alert source not configured)"
        else:
            body["reconciler"] = reconciler.state
            body["last_cycle"] = reconciler.last_result

        try:
            ping_pool(db_pool)
        except Exception as e:
            body.update({"status": "unhealthy", "errors": [f"PostgreSQL: {e}"]})
            return False, 503, body

        body["status"] = "healthy"
        return True, 200, body

    return health_check


def start_health_server(config: Config, health_check) -> threading.Thread:
    """Starts HTTP health check server in background thread."""
    HealthCheckHandler.health_check_fn = staticmethod(health_check)

    def run_server():
        server = HTTPServer(('0.0.0.0', config.HEALTH_PORT), HealthCheckHandler)
        logger.info(f"Health check server started on port {config.HEALTH_PORT}")
        server.serve_forever()

    thread = threading.Thread(target=run_server, daemon=True, name="HealthCheckServer")
    thread.start()
    return thread

# =====================================================================
# MAIN
# =====================================================================

def main():
    """Main service entry point."""
    setup_json_logging(service_name="reconciler", version=SERVICE_VERSION)

    # --- 1. Load Config, Secrets, and Connections ---
    config = Config()

    try:
        vault_client, secrets = fetch_secrets(config)
    except Exception as e:
        logger.error(f"FATAL: Failed to load secrets: {e}", exc_info=True)
        sys.exit(1)

    db_pool = connect_to_postgres(config, secrets)
    store = AlertStore(db_pool)
    try:
        store.init_schema()
    except Exception as e:
        logger.error(f"FATAL: Could not initialize alerts schema: {e}", exc_info=True)
        sys.exit(1)

    dyn = init_dynamic_config(config, secrets)

    # --- 2. Build the Reconciler ---
    source = GrafanaAlertSource.from_config(config, secrets, timeout_fn=make_timeout_fn(config, dyn))
    reconciler = None
    if source is not None:
        reconciler = AlertReconciler(
            TagCatalog(db_pool),
            source,
            store,
            interval=config.RECONCILE_INTERVAL,
            max_workers=config.RECONCILE_MAX_WORKERS,
            interval_fn=make_interval_fn(config, dyn),
        )

    # --- 3. Start Background Services ---
    stop_event = threading.Event()

    if vault_client is not None:
        start_vault_token_renewal(config, vault_client, stop_event)

    start_http_server(config.METRICS_PORT)
    logger.info(f"Prometheus metrics server started on port {config.METRICS_PORT}")

    start_health_server(config, build_health_check(config, db_pool, reconciler))

    # --- 4. Register Signal Handlers ---
    def graceful_shutdown(signum, frame):
        sig_name = 'SIGTERM' if signum == signal.SIGTERM else 'SIGINT'
        logger.warning(f"{sig_name} received. Initiating graceful shutdown...")
        stop_event.set()

    def manual_trigger(signum, frame):
        if reconciler is None:
            logger.warning("SIGHUP received but alert source is not configured; ignoring")
            return
        logger.info("SIGHUP received. Triggering reconcile cycle...")
        reconciler.trigger()

    signal.signal(signal.SIGTERM, graceful_shutdown)
    signal.signal(signal.SIGINT, graceful_shutdown)
    signal.signal(signal.SIGHUP, manual_trigger)

    # --- 5. Run ---
    logger.info("=" * 70)
    logger.info(f"ALERTSYNC Reconciler v{SERVICE_VERSION} - Pod: {config.POD_NAME}")
    logger.info("=" * 70)
    logger.info(f"Grafana: {config.GRAFANA_URL or '(not configured)'}")
    logger.info(f"Interval: {config.RECONCILE_INTERVAL}s, Fetch timeout: {config.ALERT_FETCH_TIMEOUT}s")
    logger.info(f"Upsert workers: {config.RECONCILE_MAX_WORKERS}")
    logger.info("=" * 70)

    if reconciler is not None:
        reconciler.start()

    while not stop_event.wait(1):
        pass

    # --- 6. Shutdown ---
    if reconciler is not None:
        reconciler.stop(timeout=config.SHUTDOWN_TIMEOUT)

    logger.info("Closing database connection pool...")
    db_pool.closeall()
    logger.info("Shutdown complete. Exiting.")

# =====================================================================
# SERVICE ENTRY POINT
# =====================================================================

if __name__ == "__main__":
    main()
