#!/usr/bin/env python3
"""
ALERTSYNC - Initialize Default Runtime Configuration in Redis

Seeds the DynamicConfig keys read by the reconciler on every tick. Run once
during initial deployment, or with --force to reset overrides.

- Idempotent: existing values are kept unless --force is given
- Reports what was set or skipped

Usage:
    python scripts/init_default_configs.py [--force] [--dry-run]
"""

import os
import sys
import logging
import argparse
from typing import Any, Dict

import redis

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from alertsync.dynamic_config import DynamicConfig

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# =====================================================================
# DEFAULT CONFIGURATION VALUES
# =====================================================================

DEFAULT_CONFIGS: Dict[str, Dict[str, Any]] = {
    "reconciler": {
        "reconcile_interval": {
            "value": "600",
            "description": "Seconds between reconcile cycles (10 minutes)"
        },
        "alert_fetch_timeout": {
            "value": "30",
            "description": "Timeout in seconds for the Grafana alert list request"
        },
    },
}


def get_redis_connection() -> redis.Redis:
    """
    Create a Redis connection from REDIS_* environment variables.

    Raises:
        ConnectionError: If unable to connect to Redis
    """
    redis_host = os.environ.get('REDIS_HOST', 'localhost')
    redis_port = int(os.environ.get('REDIS_PORT', 6379))
    redis_tls = os.environ.get('REDIS_TLS_ENABLED', 'false').lower() == 'true'

    logger.info(f"Connecting to Redis at {redis_host}:{redis_port} (TLS: {redis_tls})")

    try:
        r = redis.Redis(
            host=redis_host,
            port=redis_port,
            ssl=redis_tls,
            ssl_ca_certs=os.environ.get('REDIS_CA_CERT_PATH') if redis_tls else None,
            password=os.environ.get('REDIS_PASS'),
            decode_responses=True,
        )
        r.ping()
        logger.info("Successfully connected to Redis")
        return r

    except Exception as e:
        logger.error(f"Failed to connect to Redis: {e}")
        raise ConnectionError(f"Redis connection failed: {e}") from e


def initialize_configs(redis_client, force: bool = False, prefix: str = "alertsync:config") -> Dict[str, int]:
    """
    Write default configuration values.

    Args:
        redis_client: Redis client instance
        force: Overwrite existing values instead of skipping them

    Returns:
        Counts: {set, skipped, total}
    """
    config = DynamicConfig(redis_client, prefix=prefix)
    stats = {"set": 0, "skipped": 0, "total": 0}

    logger.info(f"Mode: {'FORCE (overwrite existing)' if force else 'SAFE (skip existing)'}")

    for category, configs in DEFAULT_CONFIGS.items():
        logger.info(f"[{category.upper()}]")

        for key, meta in configs.items():
            stats["total"] += 1
            try:
                existing_value = config.get(key)
            except KeyError:
                existing_value = None

            if existing_value is not None and not force:
                logger.info(f"  {key} = {existing_value} (already set, skipping)")
                stats["skipped"] += 1
                continue

            config.set(key, meta["value"])
            action = "OVERWRITTEN" if existing_value is not None else "SET"
            logger.info(f"  {key} = {meta['value']} ({action}) - {meta['description']}")
            stats["set"] += 1

    logger.info(f"Total: {stats['total']}, set: {stats['set']}, skipped: {stats['skipped']}")
    return stats


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Initialize ALERTSYNC default runtime configuration in Redis"
    )
    parser.add_argument('--force', action='store_true', help='Overwrite existing configuration values')
    parser.add_argument('--dry-run', action='store_true', help='Show what would be set without setting it')
    parser.add_argument('--prefix', default=os.environ.get('DYNAMIC_CONFIG_PREFIX', 'alertsync:config'))
    args = parser.parse_args()

    if args.dry_run:
        logger.info("DRY RUN MODE - No changes will be made")
        for category, configs in DEFAULT_CONFIGS.items():
            logger.info(f"[{category.upper()}]")
            for key, meta in configs.items():
                logger.info(f"  {args.prefix}:{key} = {meta['value']}")
        return 0

    try:
        redis_client = get_redis_connection()
        initialize_configs(redis_client, force=args.force, prefix=args.prefix)
        return 0
    except Exception as e:
        logger.error(f"Configuration initialization failed: {e}", exc_info=True)
        return 1


if __name__ == '__main__':
    sys.exit(main())
