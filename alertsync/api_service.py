#!/usr/bin/env python3
"""
=====================================================================
ALERTSYNC Alert API Service
=====================================================================
Read and dismiss surface over the alerts table kept current by the
reconciler. The reconciler is the only writer of alert content; this
service only flips the user-owned is_dismissed flag.

Endpoints:
- GET   /api/v1/alerts                   List all alerts (newest first)
- PATCH /api/v1/alerts/<id>/dismiss      Mark an alert dismissed
- PATCH /api/v1/alerts/<id>/undismiss    Clear the dismissed flag
- GET   /health                          Liveness + database check
- GET   /metrics                         Prometheus metrics

All /api/ routes require the X-API-KEY header.
=====================================================================
"""

import os
import sys
import logging
import secrets as secrets_module
import signal
import threading
import time
import uuid
from functools import wraps
from typing import Any, Callable, Dict, Optional

from flask import Flask, Response, current_app, jsonify, request
from prometheus_client import Counter, REGISTRY, generate_latest
from prometheus_flask_exporter import PrometheusMetrics

from alertsync.alert_store import AlertStore, to_api_alert
from alertsync.logging_utils import CorrelationID, setup_json_logging
from alertsync.postgres_connector import get_postgres_pool, ping_pool
from alertsync.vault_secrets import fetch_secrets, start_vault_token_renewal

SERVICE_NAME = "alertsync-api"
SERVICE_VERSION = "1.0"

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_DISMISS_TOTAL = Counter(
    'alertsync_api_dismiss_total',
    'Dismiss and undismiss requests by result',
    ['action', 'result']  # action: dismiss|undismiss; result: ok|not_found|error
)

# =====================================================================
# CONFIGURATION
# =====================================================================

class Config:
    """Service configuration loaded from environment variables."""

    def __init__(self):
        try:
            # Service Identity
            self.POD_NAME = os.environ.get('POD_NAME', f"api-{uuid.uuid4().hex[:6]}")
            self.PORT = int(os.environ.get('SERVER_PORT_API', 8097))
            self.LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

            # Auth
            self.API_KEY = os.environ.get('API_KEY')

            # PostgreSQL Config
            self.DB_HOST = os.environ.get('DB_HOST', 'localhost')
            self.DB_PORT = int(os.environ.get('DB_PORT', 5432))
            self.DB_NAME = os.environ.get('DB_NAME', 'alertsync')
            self.DB_USER = os.environ.get('DB_USER', 'alertsync')
            self.DB_TLS_ENABLED = os.environ.get('DB_TLS_ENABLED', 'false').lower() == 'true'
            self.DB_TLS_CA_CERT_PATH = os.environ.get('DB_TLS_CA_CERT_PATH')
            self.DB_POOL_MIN_CONN = int(os.environ.get('DB_POOL_MIN_CONN', 1))
            self.DB_POOL_MAX_CONN = int(os.environ.get('DB_POOL_MAX_CONN', 10))

            # Vault Config
            self.VAULT_ADDR = os.environ.get('VAULT_ADDR')
            self.VAULT_ROLE_ID = os.environ.get('VAULT_ROLE_ID')
            self.VAULT_SECRET_ID_FILE = os.environ.get('VAULT_SECRET_ID_FILE',
                                                       '/etc/alertsync/secrets/vault_secret_id')
            self.VAULT_SECRETS_PATH = os.environ.get('VAULT_SECRETS_PATH', 'secret/alertsync')
            self.VAULT_TOKEN_RENEW_THRESHOLD = int(os.environ.get('VAULT_TOKEN_RENEW_THRESHOLD', 3600))
            self.VAULT_RENEW_CHECK_INTERVAL = int(os.environ.get('VAULT_RENEW_CHECK_INTERVAL', 300))

            self._validate()

        except Exception as e:
            logger.error(f"FATAL: Configuration error: {e}")
            sys.exit(1)

    def _validate(self):
        """Validate critical configuration values."""
        if self.PORT < 1 or self.PORT > 65535:
            raise ValueError(f"SERVER_PORT_API invalid: {self.PORT}")

        if self.DB_POOL_MIN_CONN < 1 or self.DB_POOL_MAX_CONN < self.DB_POOL_MIN_CONN:
            raise ValueError(
                f"DB pool sizes invalid: min={self.DB_POOL_MIN_CONN}, max={self.DB_POOL_MAX_CONN}"
            )

        if bool(self.VAULT_ADDR) != bool(self.VAULT_ROLE_ID):
            raise ValueError("VAULT_ADDR and VAULT_ROLE_ID must be set together")

# =====================================================================
# STARTUP HELPERS
# =====================================================================

def load_secrets(app: Flask) -> None:
    """Fetch secrets into app.config and start Vault renewal when used."""
    config = app.config["ALERTSYNC_CONFIG"]
    try:
        vault_client, secrets = fetch_secrets(config)
    except Exception as e:
        logger.error(f"FATAL: Failed to load secrets: {e}", exc_info=True)
        sys.exit(1)

    if not (secrets.get('API_KEY') or config.API_KEY):
        logger.error("FATAL: API_KEY not found in Vault or environment")
        sys.exit(1)

    secrets['API_KEY'] = secrets.get('API_KEY') or config.API_KEY
    app.config["SECRETS"] = secrets

    if vault_client is not None:
        stop_event = threading.Event()
        app.config["VAULT_RENEWAL_STOP"] = stop_event
        app.config["VAULT_RENEWAL_THREAD"] = start_vault_token_renewal(config, vault_client, stop_event)


def create_postgres_pool(app: Flask) -> None:
    """Creates the PostgreSQL connection pool (dual-password aware)."""
    config = app.config["ALERTSYNC_CONFIG"]
    secrets = app.config["SECRETS"]

    logger.info(
        f"Creating PostgreSQL connection pool at {config.DB_HOST}:{config.DB_PORT} "
        f"(min={config.DB_POOL_MIN_CONN}, max={config.DB_POOL_MAX_CONN})..."
    )

    try:
        pool = get_postgres_pool(
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
        app.config['DB_POOL'] = pool
    except Exception as e:
        logger.error(f"FATAL: Could not create PostgreSQL pool: {e}", exc_info=True)
        sys.exit(1)

# =====================================================================
# AUTHENTICATION
# =====================================================================

def require_api_key(f: Callable) -> Callable:
    """Decorator to require API key authentication."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        api_key = request.headers.get('X-API-KEY')
        expected_key = current_app.config["SECRETS"]["API_KEY"]

        # Use constant-time comparison
        if not api_key or not secrets_module.compare_digest(api_key, expected_key):
            logger.warning(f"Authentication failed from {request.remote_addr}")
            return jsonify({"error": "Unauthorized", "correlation_id": request.correlation_id}), 401

        return f(*args, **kwargs)

    return decorated_function

# =====================================================================
# APPLICATION FACTORY
# =====================================================================

def create_app(store=None, secrets: Optional[Dict[str, Any]] = None, db_pool=None) -> Flask:
    """
    Creates and configures the Flask application.

    With no arguments, configuration, secrets and the database pool are
    loaded from the environment. Tests pass a store and secrets directly.
    """
    app = Flask(__name__)

    if store is None:
        app.config["ALERTSYNC_CONFIG"] = Config()
        load_secrets(app)
        create_postgres_pool(app)
        db_pool = app.config['DB_POOL']
        store = AlertStore(db_pool)
    else:
        app.config["SECRETS"] = secrets or {}
        if db_pool is not None:
            app.config['DB_POOL'] = db_pool

    app.config["ALERT_STORE"] = store

    # Initialize Prometheus metrics (disable default path)
    PrometheusMetrics(app, path=None)

    # ================================================================
    # REQUEST LIFECYCLE HOOKS
    # ================================================================

    @app.before_request
    def setup_request_context():
        request.correlation_id = request.headers.get('X-Correlation-ID', str(uuid.uuid4()))
        request.start_time = time.time()
        CorrelationID.set(request.correlation_id)

    @app.after_request
    def log_request(response):
        if hasattr(request, 'start_time'):
            duration = time.time() - request.start_time
            logger.info(
                f"{request.method} {request.path} - "
                f"Status: {response.status_code} - "
                f"Duration: {duration:.3f}s"
            )
        response.headers['X-Correlation-ID'] = getattr(request, 'correlation_id', '')
        return response

    @app.teardown_request
    def clear_request_context(exc):
        CorrelationID.clear()

    # ================================================================
    # PUBLIC ENDPOINTS (NO AUTH)
    # ================================================================

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check for load balancers and orchestrators."""
        body = {"service": SERVICE_NAME, "version": SERVICE_VERSION}
        pool = app.config.get('DB_POOL')
        if pool is None:
            body.update({"status": "healthy", "database": "not configured"})
            return jsonify(body), 200

        try:
            ping_pool(pool)
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            body.update({"status": "unhealthy", "error": str(e)})
            return jsonify(body), 503

        body.update({"status": "healthy", "database": "connected"})
        return jsonify(body), 200

    @app.route('/metrics', methods=['GET'])
    def prometheus_metrics():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(REGISTRY), mimetype='text/plain')

    # ================================================================
    # ALERTS API
    # ================================================================

    @app.route('/api/v1/alerts', methods=['GET'])
    @require_api_key
    def list_alerts():
        """All stored alerts, newest first."""
        try:
            rows = app.config["ALERT_STORE"].get_all()
        except Exception as e:
            logger.error(f"Error listing alerts: {e}", exc_info=True)
            return jsonify({"error": "Failed to list alerts", "correlation_id": request.correlation_id}), 500

        return jsonify({"alerts": [to_api_alert(row) for row in rows]})

    def _set_dismissed(alert_id: str, dismissed: bool):
        action = 'dismiss' if dismissed else 'undismiss'
        alert_store = app.config["ALERT_STORE"]
        try:
            row = alert_store.dismiss(alert_id) if dismissed else alert_store.undismiss(alert_id)
        except Exception as e:
            METRIC_DISMISS_TOTAL.labels(action=action, result='error').inc()
            logger.error(f"Error on {action} for alert {alert_id}: {e}", exc_info=True)
            return jsonify({"error": f"Failed to {action} alert", "correlation_id": request.correlation_id}), 500

        if row is None:
            METRIC_DISMISS_TOTAL.labels(action=action, result='not_found').inc()
            return jsonify({"error": "Alert not found", "id": alert_id}), 404

        METRIC_DISMISS_TOTAL.labels(action=action, result='ok').inc()
        return jsonify(to_api_alert(row))

    @app.route('/api/v1/alerts/<path:alert_id>/dismiss', methods=['PATCH'])
    @require_api_key
    def dismiss_alert(alert_id: str):
        return _set_dismissed(alert_id, True)

    @app.route('/api/v1/alerts/<path:alert_id>/undismiss', methods=['PATCH'])
    @require_api_key
    def undismiss_alert(alert_id: str):
        return _set_dismissed(alert_id, False)

    return app

# =====================================================================
# GRACEFUL SHUTDOWN
# =====================================================================

def setup_signal_handlers(app: Flask) -> None:
    """Set up signal handlers for graceful shutdown."""

    def shutdown_handler(signum, frame):
        sig_name = 'SIGTERM' if signum == signal.SIGTERM else 'SIGINT'
        logger.warning(f"{sig_name} received. Initiating graceful shutdown...")

        if "VAULT_RENEWAL_STOP" in app.config:
            logger.info("Stopping Vault token renewal thread...")
            app.config["VAULT_RENEWAL_STOP"].set()
            app.config["VAULT_RENEWAL_THREAD"].join(timeout=5)

        if "DB_POOL" in app.config:
            logger.info("Closing database connection pool...")
            app.config["DB_POOL"].closeall()

        logger.info("Graceful shutdown complete. Exiting.")
        sys.exit(0)

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)
    logger.info("Signal handlers registered for graceful shutdown")


def main():
    setup_json_logging(service_name="api", version=SERVICE_VERSION)
    app = create_app()
    setup_signal_handlers(app)
    config = app.config["ALERTSYNC_CONFIG"]
    logger.info(f"ALERTSYNC Alert API v{SERVICE_VERSION} listening on port {config.PORT}")
    app.run(host='0.0.0.0', port=config.PORT)


if __name__ == "__main__":
    main()
