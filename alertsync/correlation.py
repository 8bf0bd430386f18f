#!/usr/bin/env python3
"""
=====================================================================
ALERTSYNC Correlation Engine
=====================================================================
Turns externally reported alerts into alert records, one per internal
service whose tag matches the alert's `tag` label (fan-out).

Pure logic: the only collaborator is the tag catalog, and nothing here
touches the alert store. The keep-set used for pruning is built later
from successful upserts, not from this output.
=====================================================================
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# RFC 3339 with optional fraction of any length (Grafana sends nanoseconds).
_TIMESTAMP_RE = re.compile(
    r'^(?P<base>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})'
    r'(?:\.(?P<fraction>\d+))?'
    r'(?P<tz>Z|z|[+-]\d{2}:?\d{2})?$'
)


def make_alert_id(fingerprint: str, service_id: int) -> str:
    """Composite key of one (external alert, service) pair."""
    return f"{fingerprint}:{service_id}"


def normalize_timestamp(value: Any) -> str:
    """
    Normalize a source timestamp to UTC "YYYY-MM-DDTHH:MM:SS.mmmZ".

    Missing or unparseable values become "" instead of raising.
    """
    if not value or not isinstance(value, str):
        return ''

    match = _TIMESTAMP_RE.match(value.strip())
    if not match:
        logger.debug(f"Unparseable timestamp {value!r}; storing empty string")
        return ''

    fraction = (match.group('fraction') or '')[:6].ljust(6, '0')
    tz = match.group('tz') or '+00:00'
    if tz in ('Z', 'z'):
        tz = '+00:00'
    elif ':' not in tz:
        tz = f"{tz[:3]}:{tz[3:]}"

    # Offsets can push year 1 or year 9999 out of range once shifted to UTC
    try:
        parsed = datetime.fromisoformat(f"{match.group('base').replace(' ', 'T')}.{fraction}{tz}")
        parsed = parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        logger.debug(f"Invalid timestamp {value!r}; storing empty string")
        return ''

    return parsed.strftime('%Y-%m-%dT%H:%M:%S.') + f"{parsed.microsecond // 1000:03d}Z"


def _mapping(alert: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = alert.get(key)
    return value if isinstance(value, dict) else {}


def extract_tag(alert: Dict[str, Any]) -> str:
    """The alert's tag label, or "" when absent."""
    tag = _mapping(alert, 'labels').get('tag')
    return tag if isinstance(tag, str) else ''


def build_alert_record(alert: Dict[str, Any], tag: str, service_id: int) -> Dict[str, Any]:
    """Map one external alert onto the record stored for service_id."""
    labels = _mapping(alert, 'labels')
    annotations = _mapping(alert, 'annotations')
    status = _mapping(alert, 'status')

    return {
        'id': make_alert_id(alert.get('fingerprint', ''), service_id),
        'status': status.get('state') or '',
        'tag': tag,
        'starts_at': normalize_timestamp(alert.get('startsAt')),
        'updated_at': normalize_timestamp(alert.get('updatedAt')),
        'alert_url': alert.get('generatorURL') or '',
        'alert_name': (
            labels.get('rulename')
            or labels.get('alertname')
            or annotations.get('summary')
            or ''
        ),
        'summary': annotations.get('summary') or '',
        'runbook_url': annotations.get('runbook_url') or '',
        'service_id': service_id,
    }


def correlate_alerts(
    alerts: Iterable[Dict[str, Any]],
    tag_catalog,
) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    """
    Fan every tagged alert out to the services carrying its tag.

    Untagged alerts and alerts whose tag matches no service are skipped.
    A tag that fails to resolve, or an alert that cannot be mapped, skips
    that alert only. If the same id is produced twice, the later occurrence
    wins.

    Returns:
        (records, stats) where stats counts alerts, untagged, malformed,
        resolve_failed, unmatched and records
    """
    records: Dict[str, Dict[str, Any]] = {}
    resolved_tags: Dict[str, List[int]] = {}
    stats = {'alerts': 0, 'untagged': 0, 'malformed': 0, 'resolve_failed': 0, 'unmatched': 0, 'records': 0}

    for alert in alerts:
        stats['alerts'] += 1
        if not isinstance(alert, dict):
            stats['malformed'] += 1
            logger.error(f"Skipping alert that is not an object: {type(alert).__name__}")
            continue

        fingerprint = alert.get('fingerprint')
        tag = extract_tag(alert)

        if not tag:
            stats['untagged'] += 1
            logger.debug(f"Skipping untagged alert {fingerprint}")
            continue

        if not fingerprint:
            stats['malformed'] += 1
            logger.info(f"Skipping alert without fingerprint (tag={tag})")
            continue

        service_ids: Optional[List[int]] = resolved_tags.get(tag)
        if service_ids is None:
            try:
                service_ids = list(tag_catalog.resolve_service_ids(tag))
            except Exception as e:
                stats['resolve_failed'] += 1
                logger.error(f"Tag→services failed for tag='{tag}' (alert {fingerprint}): {e}")
                continue
            resolved_tags[tag] = service_ids

        if not service_ids:
            stats['unmatched'] += 1
            logger.debug(f"No services carry tag '{tag}'; skipping alert {fingerprint}")
            continue

        try:
            alert_records = [build_alert_record(alert, tag, service_id) for service_id in service_ids]
        except Exception as e:
            stats['malformed'] += 1
            logger.error(f"Failed to build records for alert {fingerprint} (tag={tag}): {e}")
            continue

        for record in alert_records:
            records[record['id']] = record

    stats['records'] = len(records)
    return list(records.values()), stats
