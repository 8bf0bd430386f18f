#!/usr/bin/env python3
"""
=====================================================================
ALERTSYNC External Alert Source (Grafana)
=====================================================================
Pulls the current alert list from Grafana's Alertmanager-compatible API.

Contract used by the reconciler:
- fetch_alerts() returns a list (possibly empty) when Grafana answered.
- fetch_alerts() raises AlertSourceError when Grafana could not be
  reached, rejected the credentials, timed out, or sent garbage.

Only the second case suppresses pruning, so "empty but valid" must never
be reported as an error and vice versa.
=====================================================================
"""

import logging
import re
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from prometheus_client import Histogram

logger = logging.getLogger(__name__)

ALERTS_PATH = "/api/alertmanager/grafana/api/v2/alerts"

METRIC_FETCH_LATENCY = Histogram(
    'alertsync_source_fetch_latency_seconds',
    'Latency of alert list requests to the external source',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)


class AlertSourceError(Exception):
    """The external alert source could not deliver a trustworthy alert list."""
    pass


def build_tag_filter(tag_names: Iterable[str]) -> str:
    """Alertmanager matcher selecting alerts whose tag label is one of tag_names."""
    escaped = [re.escape(name).replace('"', '\\"') for name in sorted(set(tag_names))]
    return 'tag=~"^(' + '|'.join(escaped) + ')$"'


class GrafanaAlertSource:
    """
    Grafana alert adapter.

    Args:
        base_url: Grafana root URL, e.g. https://grafana.example.com
        api_key: Service account token
        timeout: Per-request timeout in seconds
        timeout_fn: Optional callable returning the current timeout (runtime
            overrides); falls back to timeout when it fails or returns <= 0
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30,
        timeout_fn: Optional[Callable[[], float]] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.timeout_fn = timeout_fn

    @classmethod
    def from_config(
        cls,
        config,
        secrets: Dict[str, Optional[str]],
        timeout_fn: Optional[Callable[[], float]] = None,
    ) -> Optional["GrafanaAlertSource"]:
        """Build a source from service config, or None when Grafana is not configured."""
        api_key = secrets.get('GRAFANA_API_KEY') or config.GRAFANA_API_KEY
        if not config.GRAFANA_URL:
            logger.warning("GRAFANA_URL not set; alert reconciliation is idle")
            return None
        if not api_key:
            logger.warning(f"No API key for Grafana at {config.GRAFANA_URL}; alert reconciliation is idle")
            return None
        return cls(config.GRAFANA_URL, api_key, timeout=config.ALERT_FETCH_TIMEOUT, timeout_fn=timeout_fn)

    def _current_timeout(self) -> float:
        if self.timeout_fn is None:
            return self.timeout
        try:
            timeout = float(self.timeout_fn())
        except Exception as e:
            logger.warning(f"Could not evaluate fetch timeout, using {self.timeout}s: {e}")
            return self.timeout
        return timeout if timeout > 0 else self.timeout

    def fetch_alerts(self, tag_names: Iterable[str]) -> List[Dict[str, Any]]:
        """
        Current alerts carrying one of tag_names.

        Returns:
            List of Alertmanager alert objects ([] when nothing is firing)

        Raises:
            AlertSourceError: On timeout, connection failure, auth failure,
                unexpected status or malformed body
        """
        tag_names = list(tag_names)
        if not tag_names:
            logger.info("No tags defined; nothing can correlate, skipping Grafana request")
            return []

        url = f"{self.base_url}{ALERTS_PATH}"
        params = {
            'active': 'true',
            'filter': build_tag_filter(tag_names),
        }
        headers = {
            'Authorization': f"Bearer {self.api_key}",
            'Accept': 'application/json',
        }

        timeout = self._current_timeout()
        start_time = time.time()
        try:
            response = requests.get(url, params=params, headers=headers, timeout=timeout)
        except requests.exceptions.Timeout as e:
            raise AlertSourceError(f"Grafana request timed out after {timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise AlertSourceError(f"Grafana connection error: {e}") from e
        except requests.exceptions.RequestException as e:
            raise AlertSourceError(f"Grafana request failed: {e}") from e
        finally:
            METRIC_FETCH_LATENCY.observe(time.time() - start_time)

        if response.status_code == 404:
            logger.info("Grafana alertmanager returned 404; treating as no alerts")
            return []

        if response.status_code in (401, 403):
            raise AlertSourceError(f"Grafana rejected credentials (HTTP {response.status_code})")

        if not 200 <= response.status_code < 300:
            raise AlertSourceError(f"Grafana returned HTTP {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError as e:
            raise AlertSourceError(f"Grafana returned invalid JSON: {e}") from e

        if not isinstance(body, list):
            raise AlertSourceError(f"Grafana returned {type(body).__name__}, expected a list of alerts")

        alerts = [item for item in body if isinstance(item, dict)]
        if len(alerts) != len(body):
            logger.debug(f"Dropped {len(body) - len(alerts)} non-object entries from Grafana response")

        logger.info(f"Fetched {len(alerts)} alerts from Grafana for {len(tag_names)} tags")
        return alerts
