#!/usr/bin/env python3
"""
=====================================================================
ALERTSYNC Reconciliation Scheduler
=====================================================================
Drives the pull → correlate → upsert → prune cycle.

States of one cycle:
    idle → fetching → correlating → persisting → pruning → idle

Guarantees:
- Single flight: at most one cycle at a time. A tick that arrives while a
  cycle is running is dropped, never queued.
- A failed fetch ends the cycle before any write. The store is untouched.
- The keep-set holds only ids whose upsert succeeded.
- Pruning is a barrier: it runs after every upsert of the cycle has
  finished, and only when the cycle was not interrupted by shutdown.
- Nothing raised inside a cycle escapes run_cycle().

Collaborators are injected; the scheduler owns its own stop event,
single-flight lock, tick thread and upsert worker pool.
=====================================================================
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from prometheus_client import Counter, Gauge, Histogram

from alertsync.correlation import correlate_alerts
from alertsync.logging_utils import CorrelationID

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_CYCLES_TOTAL = Counter(
    'alertsync_reconcile_cycles_total',
    'Reconcile cycles by outcome',
    ['outcome']  # success, fetch_failed, prune_failed, interrupted, error
)

METRIC_CYCLE_DURATION = Histogram(
    'alertsync_reconcile_cycle_duration_seconds',
    'Wall time of one reconcile cycle',
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

METRIC_UPSERTS_TOTAL = Counter(
    'alertsync_reconcile_upserts_total',
    'Alert upserts attempted by the reconciler',
    ['status']  # success, failed, skipped
)

METRIC_PRUNED_TOTAL = Counter(
    'alertsync_reconcile_pruned_total',
    'Alerts deleted because the source no longer reports them'
)

METRIC_TICKS_DROPPED = Counter(
    'alertsync_reconcile_ticks_dropped_total',
    'Ticks discarded because a cycle was already running'
)

METRIC_CORRELATION_SKIPPED = Counter(
    'alertsync_correlation_skipped_total',
    'External alerts not correlated to any service',
    ['reason']  # untagged, malformed, resolve_failed, unmatched
)

METRIC_ALERTS_FETCHED = Gauge(
    'alertsync_reconcile_alerts_fetched',
    'Alerts returned by the source in the last successful fetch'
)

METRIC_RECORDS = Gauge(
    'alertsync_reconcile_records',
    'Alert records produced by correlation in the last cycle'
)

METRIC_LAST_SUCCESS = Gauge(
    'alertsync_reconcile_last_success_timestamp_seconds',
    'Unix time of the last fully successful cycle'
)

# Cycle outcomes
OUTCOME_SUCCESS = 'success'
OUTCOME_FETCH_FAILED = 'fetch_failed'
OUTCOME_PRUNE_FAILED = 'prune_failed'
OUTCOME_INTERRUPTED = 'interrupted'
OUTCOME_ERROR = 'error'

# Upsert outcomes
UPSERT_SUCCESS = 'success'
UPSERT_FAILED = 'failed'
UPSERT_SKIPPED = 'skipped'


class AlertReconciler:
    """
    Periodic reconciler of external alerts into the alert store.

    Args:
        tag_catalog: provides list_all_tag_names() and resolve_service_ids(tag)
        alert_source: provides fetch_alerts(tag_names); raises on failure
        alert_store: provides upsert(record) and delete_not_in(keep_ids)
        interval: seconds between ticks
        max_workers: concurrent upserts per cycle
        interval_fn: optional callable returning the current interval,
            evaluated before every tick (runtime overrides)
    """

    def __init__(
        self,
        tag_catalog,
        alert_source,
        alert_store,
        interval: float = 600,
        max_workers: int = 4,
        interval_fn: Optional[Callable[[], float]] = None,
    ):
        self.tag_catalog = tag_catalog
        self.alert_source = alert_source
        self.alert_store = alert_store
        self.interval = interval
        self.interval_fn = interval_fn or (lambda: self.interval)

        self.state = 'idle'
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="AlertUpsert")
        self._ticker_thread: Optional[threading.Thread] = None
        self._cycle_owner: Optional[threading.Thread] = None
        self._last_result: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """True while a cycle is in flight."""
        return self._cycle_lock.locked()

    @property
    def last_result(self) -> Optional[Dict[str, Any]]:
        return self._last_result

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _current_interval(self) -> float:
        try:
            interval = float(self.interval_fn())
        except Exception as e:
            logger.warning(f"Could not evaluate reconcile interval, using {self.interval}s: {e}")
            return self.interval
        if interval < 1:
            logger.warning(f"Ignoring reconcile interval {interval}s (< 1s), using {self.interval}s")
            return self.interval
        return interval

    def start(self) -> None:
        """Run one cycle now, then one every interval until stop()."""
        if self._ticker_thread is not None:
            return

        logger.info(f"Starting alert reconciler (interval={self._current_interval()}s)")
        self.trigger()

        def tick_loop():
            logger.info("Reconcile ticker started")
            while not self._stop_event.wait(self._current_interval()):
                self.trigger()
            logger.info("Reconcile ticker stopped")

        self._ticker_thread = threading.Thread(target=tick_loop, daemon=True, name="ReconcileTicker")
        self._ticker_thread.start()

    def trigger(self) -> bool:
        """
        Start a cycle on a background thread.

        Returns:
            False when the tick was dropped (cycle in flight or stopping)
        """
        if self._stop_event.is_set():
            return False

        if not self._cycle_lock.acquire(blocking=False):
            METRIC_TICKS_DROPPED.inc()
            logger.warning("Reconcile cycle still running; dropping tick")
            return False

        def run_locked():
            try:
                self._reconcile()
            finally:
                self._cycle_lock.release()

        threading.Thread(target=run_locked, daemon=True, name="ReconcileCycle").start()
        return True

    def run_cycle(self) -> Optional[Dict[str, Any]]:
        """
        Run one cycle in the calling thread.

        Returns:
            Cycle summary, or None when the call was dropped
        """
        if self._stop_event.is_set():
            return None

        if not self._cycle_lock.acquire(blocking=False):
            METRIC_TICKS_DROPPED.inc()
            logger.warning("Reconcile cycle still running; dropping tick")
            return None

        try:
            return self._reconcile()
        finally:
            self._cycle_lock.release()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop ticking and let the in-flight cycle finish.

        Upserts already issued complete and stay committed; no new ones are
        issued, and an interrupted cycle does not prune.
        """
        logger.info("Stopping alert reconciler...")
        self._stop_event.set()

        if self._ticker_thread is not None:
            self._ticker_thread.join(timeout=timeout)

        # Holding the cycle lock means no cycle is in flight, whichever thread ran it
        if self._cycle_owner is not threading.current_thread():
            if self._cycle_lock.acquire(timeout=-1 if timeout is None else timeout):
                self._cycle_lock.release()
            else:
                logger.warning("In-flight reconcile cycle did not finish before stop timeout")

        self._executor.shutdown(wait=True)
        logger.info("Alert reconciler stopped")

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _fetch(self) -> Tuple[List[str], List[Dict[str, Any]]]:
        tag_names = list(self.tag_catalog.list_all_tag_names())
        alerts = self.alert_source.fetch_alerts(tag_names)
        return tag_names, list(alerts)

    def _upsert_one(self, record: Dict[str, Any]) -> str:
        if self._stop_event.is_set():
            return UPSERT_SKIPPED
        try:
            self.alert_store.upsert(record)
            return UPSERT_SUCCESS
        except Exception as e:
            logger.error(f"Upsert failed for id={record['id']}: {e}")
            return UPSERT_FAILED

    def _persist(self, records: List[Dict[str, Any]]) -> Tuple[Set[str], Dict[str, int]]:
        """Upsert records concurrently; wait for all. Returns (keep_ids, counts)."""
        counts = {UPSERT_SUCCESS: 0, UPSERT_FAILED: 0, UPSERT_SKIPPED: 0}
        keep_ids: Set[str] = set()
        futures = {}

        for record in records:
            if self._stop_event.is_set():
                logger.warning("Shutdown requested; no further upserts this cycle")
                break
            future = self._executor.submit(CorrelationID.bind(self._upsert_one), record)
            futures[future] = record['id']

        counts[UPSERT_SKIPPED] += len(records) - len(futures)

        # Barrier: every submitted upsert finishes before pruning is considered.
        for future in as_completed(futures):
            status = future.result()
            counts[status] += 1
            if status == UPSERT_SUCCESS:
                keep_ids.add(futures[future])

        for status, count in counts.items():
            if count:
                METRIC_UPSERTS_TOTAL.labels(status=status).inc(count)

        return keep_ids, counts

    def _reconcile(self) -> Dict[str, Any]:
        self._cycle_owner = threading.current_thread()
        cycle_id = f"cycle-{uuid.uuid4().hex[:8]}"
        CorrelationID.set(cycle_id)
        start_time = time.time()
        result: Dict[str, Any] = {
            'cycle_id': cycle_id,
            'outcome': OUTCOME_ERROR,
            'fetched': 0,
            'records': 0,
            'upserted': 0,
            'failed': 0,
            'skipped': 0,
            'pruned': None,
        }

        try:
            self.state = 'fetching'
            try:
                tag_names, alerts = self._fetch()
            except Exception as e:
                logger.error(f"Alert fetch failed; no upserts or pruning this cycle: {e}")
                result['outcome'] = OUTCOME_FETCH_FAILED
                return result

            result['fetched'] = len(alerts)
            METRIC_ALERTS_FETCHED.set(len(alerts))
            logger.info(f"Fetched {len(alerts)} alerts for {len(tag_names)} tags")

            self.state = 'correlating'
            records, stats = correlate_alerts(alerts, self.tag_catalog)
            result['records'] = len(records)
            METRIC_RECORDS.set(len(records))
            for reason in ('untagged', 'malformed', 'resolve_failed', 'unmatched'):
                if stats.get(reason):
                    METRIC_CORRELATION_SKIPPED.labels(reason=reason).inc(stats[reason])

            self.state = 'persisting'
            keep_ids, counts = self._persist(records)
            result['upserted'] = counts[UPSERT_SUCCESS]
            result['failed'] = counts[UPSERT_FAILED]
            result['skipped'] = counts[UPSERT_SKIPPED]

            if self._stop_event.is_set():
                logger.warning("Cycle interrupted by shutdown; skipping prune")
                result['outcome'] = OUTCOME_INTERRUPTED
                return result

            self.state = 'pruning'
            try:
                pruned = self.alert_store.delete_not_in(keep_ids)
            except Exception as e:
                logger.error(f"Prune failed; stale alerts kept until next cycle: {e}")
                result['outcome'] = OUTCOME_PRUNE_FAILED
                return result

            result['pruned'] = pruned
            METRIC_PRUNED_TOTAL.inc(pruned or 0)
            result['outcome'] = OUTCOME_SUCCESS
            METRIC_LAST_SUCCESS.set(time.time())
            return result

        except Exception as e:
            logger.error(f"Unhandled error in reconcile cycle: {e}", exc_info=True)
            result['outcome'] = OUTCOME_ERROR
            return result

        finally:
            self.state = 'idle'
            result['duration'] = round(time.time() - start_time, 3)
            METRIC_CYCLES_TOTAL.labels(outcome=result['outcome']).inc()
            METRIC_CYCLE_DURATION.observe(result['duration'])
            self._last_result = result
            logger.info(
                f"Reconcile cycle {result['outcome']}: fetched={result['fetched']}, "
                f"records={result['records']}, upserted={result['upserted']}, "
                f"failed={result['failed']}, skipped={result['skipped']}, "
                f"pruned={result['pruned']}, duration={result['duration']}s"
            )
            CorrelationID.clear()
            self._cycle_owner = None
