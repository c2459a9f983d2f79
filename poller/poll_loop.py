"""Poll loop driving fetch, diff, dispatch and persist on a fixed interval."""
import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from notifications.dispatcher import Dispatcher
from notifications.models import JobOutcome
from notifications.router import route
from processor.errors import (
    CorruptSnapshotError,
    MalformedScheduleError,
    ScheduleFetchError,
    StoreUnavailableError,
)
from processor.snapshot_builder import SnapshotBuilder, next_version
from storage.state_store import SaveOutcome, StateStoreAdapter

logger = logging.getLogger(__name__)


class ControllerState(str, Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    DIFFING = 'diffing'
    DISPATCHING = 'dispatching'
    PERSISTING = 'persisting'
    STOPPED = 'stopped'


@dataclass
class CycleReport:
    """Summary of one poll cycle."""
    added: int = 0
    updated: int = 0
    removed: int = 0
    bootstrap: bool = False
    rebaselined: bool = False
    jobs: int = 0
    delivered: int = 0
    failed: int = 0
    subscribers_dropped: int = 0
    save_outcome: Optional[SaveOutcome] = None
    cancelled: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_seconds: float = 0.0


class PollLoopController:
    """
    Runs at most one sync cycle at a time, on a jittered fixed interval.

    States: IDLE -> FETCHING -> DIFFING -> DISPATCHING -> PERSISTING -> IDLE,
    and STOPPED once stop() has been called. Every failure inside a cycle
    returns the controller to IDLE to wait for the next tick.
    """

    def __init__(
        self,
        source,
        state_store: StateStoreAdapter,
        dispatcher: Dispatcher,
        builder: SnapshotBuilder = None,
        interval: float = 60.0,
        jitter_ratio: float = 0.1,
        rng: random.Random = None
    ):
        """
        Initialize the controller.

        Args:
            source: Schedule source with fetch_schedule()
            state_store: Store adapter for snapshots and subscribers
            dispatcher: Dispatcher sending notification jobs
            builder: Snapshot builder (default: SnapshotBuilder())
            interval: Seconds between ticks
            jitter_ratio: Maximum extra delay as a fraction of interval
            rng: Random source for jitter
        """
        self.source = source
        self.state_store = state_store
        self.dispatcher = dispatcher
        self.builder = builder or SnapshotBuilder()
        self.interval = interval
        self.jitter_ratio = jitter_ratio
        self.rng = rng or random.Random()

        self._state = ControllerState.IDLE
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> ControllerState:
        with self._lock:
            return self._state

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def next_delay(self) -> float:
        """Interval plus random jitter of up to jitter_ratio * interval."""
        return self.interval + self.rng.uniform(0, self.jitter_ratio * self.interval)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run the poll loop on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Poll loop already running")
            return
        self._thread = threading.Thread(target=self.run, name='poll-loop', daemon=True)
        self._thread.start()

    def stop(self, deadline: float = 30.0) -> bool:
        """
        Stop the poll loop cooperatively.

        Args:
            deadline: Seconds to wait for an in-flight cycle to finish

        Returns:
            True if the loop thread exited within the deadline
        """
        logger.info(f"Stopping poll loop (deadline {deadline}s)")
        self._stop_event.set()

        finished = True
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(deadline)
            finished = not self._thread.is_alive()
            if not finished:
                logger.warning("In-flight cycle did not finish before the deadline")

        with self._lock:
            self._state = ControllerState.STOPPED
        return finished

    def run(self) -> None:
        """Tick immediately, then on every interval until stopped."""
        logger.info(
            "Poll loop started",
            extra={'interval_seconds': self.interval, 'jitter_ratio': self.jitter_ratio}
        )
        while not self._stop_event.is_set():
            self.tick()
            if self._stop_event.wait(self.next_delay()):
                break

        with self._lock:
            self._state = ControllerState.STOPPED
        logger.info("Poll loop stopped")

    def tick(self) -> Optional[CycleReport]:
        """
        Start a cycle if the controller is idle.

        Ticks arriving while a cycle is in flight are logged and dropped,
        never queued.

        Returns:
            CycleReport of the cycle, or None if the tick was ignored
        """
        with self._lock:
            if self._stop_event.is_set():
                logger.warning("Tick ignored, controller is stopping")
                return None
            if self._state != ControllerState.IDLE:
                logger.warning(f"Tick ignored, controller is {self._state.value}")
                return None
            self._state = ControllerState.FETCHING

        try:
            return self._run_cycle()
        finally:
            self._transition(ControllerState.IDLE)

    def _transition(self, state: ControllerState) -> None:
        with self._lock:
            if self._state == ControllerState.STOPPED:
                return
            logger.debug(f"State {self._state.value} -> {state.value}")
            self._state = state

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _run_cycle(self) -> CycleReport:
        """
        Fetch, diff, route, dispatch and persist once.

        Returns:
            CycleReport describing what happened
        """
        start_time = time.time()
        report = CycleReport()

        try:
            raw_runs = self.source.fetch_schedule()
            logger.info(f"Fetched {len(raw_runs)} raw runs")

            if self.stopping:
                report.cancelled = True
                return report

            self._transition(ControllerState.DIFFING)
            prior, expected_version = self._load_prior(report)
            prior_version = expected_version if isinstance(expected_version, int) else None
            current = self.builder.build(raw_runs, version=next_version(prior_version))
            diff = current.compare(prior)

            report.bootstrap = diff.is_bootstrap
            report.added = len(diff.added)
            report.updated = len(diff.updated)
            report.removed = len(diff.removed)

            if diff.is_empty and not diff.is_bootstrap:
                logger.info("Schedule unchanged, nothing to dispatch or persist")
                return report

            jobs = []
            if not diff.is_bootstrap:
                subscribers = self.state_store.list_subscribers()
                jobs = route(diff, subscribers)
            report.jobs = len(jobs)

            if self.stopping:
                report.cancelled = True
                return report

            self._transition(ControllerState.DISPATCHING)
            results = self.dispatcher.dispatch(jobs, cancel=self._stop_event)
            report.delivered = sum(1 for r in results if r.outcome == JobOutcome.DELIVERED)
            report.failed = sum(
                1 for r in results
                if r.outcome in (JobOutcome.TRANSIENT_FAILURE, JobOutcome.PERMANENT_FAILURE)
            )
            report.subscribers_dropped = len({
                r.job.subscriber.subscriber_id for r in results
                if r.outcome == JobOutcome.PERMANENT_FAILURE
            })

            if self.stopping:
                # Unsent jobs were cancelled; the next run redoes this diff
                report.cancelled = True
                logger.warning("Shutdown during dispatch, snapshot not persisted")
                return report

            self._transition(ControllerState.PERSISTING)
            report.save_outcome = self.state_store.save_snapshot(current, expected_version=expected_version)
            if report.save_outcome == SaveOutcome.CONFLICT:
                logger.warning(
                    f"Another instance advanced the snapshot past version {expected_version}"
                )

        except (ScheduleFetchError, MalformedScheduleError, StoreUnavailableError) as e:
            # Fatal for this cycle only; state is left as it was
            logger.error(
                f"Cycle aborted: {str(e)}",
                extra={'error_type': type(e).__name__}
            )
            report.error = str(e)
            report.error_type = type(e).__name__

        except Exception as e:
            logger.error(
                f"Cycle failed unexpectedly: {str(e)}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
            report.error = str(e)
            report.error_type = type(e).__name__

        finally:
            report.duration_seconds = round(time.time() - start_time, 2)
            self._log_report(report)

        return report

    def _load_prior(self, report: CycleReport):
        """
        Load the prior snapshot and the version a save must replace.

        A stored snapshot that cannot be decoded is replaced by a fresh
        baseline: the cycle runs as a bootstrap, so nothing is notified,
        and the save is conditioned on the corrupt item's version.

        Returns:
            Tuple of (prior Snapshot or None, expected version for the save)
        """
        try:
            prior = self.state_store.load_snapshot()
        except CorruptSnapshotError as e:
            logger.error(
                f"Stored snapshot is corrupt, re-baselining: {str(e)}",
                extra={'stored_version': e.stored_version}
            )
            report.rebaselined = True
            return None, e.stored_version
        return prior, (prior.version if prior else None)

    def _log_report(self, report: CycleReport) -> None:
        logger.info(
            "Cycle finished",
            extra={
                'events_added': report.added,
                'events_updated': report.updated,
                'events_removed': report.removed,
                'bootstrap': report.bootstrap,
                'rebaselined': report.rebaselined,
                'jobs': report.jobs,
                'delivered': report.delivered,
                'failed': report.failed,
                'subscribers_dropped': report.subscribers_dropped,
                'save_outcome': report.save_outcome.value if report.save_outcome else None,
                'cancelled': report.cancelled,
                'error_type': report.error_type,
                'duration_seconds': report.duration_seconds
            }
        )
