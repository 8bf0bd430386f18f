#!/usr/bin/env python3
"""
ALERTSYNC - Dynamic Configuration

Runtime overrides for reconciler tunables, stored in Redis so operators can
change the cycle interval or fetch timeout without restarting the worker.

Values are cached locally for `cache_ttl` seconds. The reconciler re-reads
them on every tick, so a change takes effect within one interval.

Usage:
    config = DynamicConfig(redis_client, prefix="alertsync:config")
    interval = config.get_int('reconcile_interval', fallback=600)
    config.set('reconcile_interval', '120')
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class DynamicConfigError(Exception):
    """Raised when dynamic configuration operations fail."""
    pass


class DynamicConfig:
    """
    Redis-backed key/value configuration with a local TTL cache.

    Attributes:
        redis: Redis client instance
        prefix: Key prefix for all config keys
        cache_ttl: Seconds a locally cached value stays valid
    """

    def __init__(self, redis_client, prefix: str = "alertsync:config", cache_ttl: int = 5):
        self.redis = redis_client
        self.prefix = prefix
        self.cache_ttl = cache_ttl
        self.cache: Dict[str, Dict[str, Any]] = {}
        self.cache_lock = threading.Lock()

        self.load_all()
        logger.info(f"DynamicConfig initialized: prefix={prefix}, cache_ttl={cache_ttl}s")

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str, default: Optional[str] = None) -> str:
        """
        Return the value for key, from cache when fresh, else from Redis.

        Raises:
            KeyError: If key is missing and no default was given
            DynamicConfigError: If Redis fails
        """
        with self.cache_lock:
            entry = self.cache.get(key)
            if entry and time.time() - entry['timestamp'] < self.cache_ttl:
                return entry['value']

        try:
            value = self.redis.get(self._key(key))
        except Exception as e:
            logger.error(f"Failed to get config {key} from Redis: {e}")
            raise DynamicConfigError(f"Failed to get config {key}: {e}") from e

        if value is not None:
            value = value.decode('utf-8') if isinstance(value, bytes) else value
            with self.cache_lock:
                self.cache[key] = {'value': value, 'timestamp': time.time()}
            return value

        if default is not None:
            return default

        raise KeyError(f"Configuration key not found: {key}")

    def get_int(self, key: str, fallback: int) -> int:
        """Integer value for key, or fallback when missing, invalid or unreachable."""
        try:
            return int(self.get(key, default=str(fallback)))
        except (ValueError, KeyError, DynamicConfigError) as e:
            logger.debug(f"DynamicConfig get_int failed for {key}: {e}")
            return fallback

    def get_float(self, key: str, fallback: float) -> float:
        """Float value for key, or fallback when missing, invalid or unreachable."""
        try:
            return float(self.get(key, default=str(fallback)))
        except (ValueError, KeyError, DynamicConfigError) as e:
            logger.debug(f"DynamicConfig get_float failed for {key}: {e}")
            return fallback

    def set(self, key: str, value: Any) -> None:
        """Write key to Redis and refresh the local cache."""
        str_value = str(value)
        try:
            self.redis.set(self._key(key), str_value)
        except Exception as e:
            logger.error(f"Failed to set config {key}={value}: {e}")
            raise DynamicConfigError(f"Failed to set config {key}: {e}") from e

        with self.cache_lock:
            self.cache[key] = {'value': str_value, 'timestamp': time.time()}
        logger.info(f"Config updated: {key}={str_value}")

    def load_all(self) -> int:
        """Warm the cache with every key under the prefix. Returns the count."""
        count = 0
        try:
            for redis_key in self.redis.scan_iter(match=f"{self.prefix}:*", count=100):
                key_str = redis_key.decode('utf-8') if isinstance(redis_key, bytes) else redis_key
                key_name = key_str[len(self.prefix) + 1:]
                value = self.redis.get(redis_key)
                if value is None:
                    continue
                value = value.decode('utf-8') if isinstance(value, bytes) else value
                with self.cache_lock:
                    self.cache[key_name] = {'value': value, 'timestamp': time.time()}
                count += 1
        except Exception as e:
            logger.error(f"Failed to load config from Redis: {e}")
            raise DynamicConfigError(f"Failed to load config: {e}") from e

        logger.info(f"Loaded {count} config values from Redis")
        return count
