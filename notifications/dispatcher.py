"""Dispatcher sending notification jobs with per-job failure isolation."""
import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from botocore.exceptions import ClientError

from notifications.discord_webhook import DiscordWebhookMessenger
from notifications.models import DeliveryStatus, JobOutcome, JobResult, NotificationJob
from notifications.render import render_message
from processor.backoff import BackoffPolicy, DELIVERY_BACKOFF
from processor.errors import StoreUnavailableError
from storage.state_store import StateStoreAdapter

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Sends notification jobs through the messaging platform.

    Jobs for different subscribers run concurrently on a bounded thread
    pool; jobs for the same subscriber are sent one after the other so they
    arrive in the order the router produced. A failing job never aborts the
    batch.
    """

    MAX_WORKERS = 16

    # Delivery status -> (retry?, outcome when no further attempt is made)
    POLICY: Dict[DeliveryStatus, Tuple[bool, JobOutcome]] = {
        DeliveryStatus.OK: (False, JobOutcome.DELIVERED),
        DeliveryStatus.TRANSIENT: (True, JobOutcome.TRANSIENT_FAILURE),
        DeliveryStatus.PERMANENT: (False, JobOutcome.PERMANENT_FAILURE),
    }

    def __init__(
        self,
        messenger: DiscordWebhookMessenger,
        state_store: Optional[StateStoreAdapter] = None,
        max_workers: int = MAX_WORKERS,
        backoff: BackoffPolicy = DELIVERY_BACKOFF,
        channel_name: str = 'gamesdonequick',
        renderer: Callable = render_message
    ):
        """
        Initialize the dispatcher.

        Args:
            messenger: Object with send(destination, message, idempotency_key)
            state_store: StateStoreAdapter used to remove dead subscribers
            max_workers: Upper bound of subscriber groups in flight
            backoff: Retry policy for transient failures
            channel_name: Twitch channel linked in messages
            renderer: Callable turning a job into a RenderedMessage
        """
        self.messenger = messenger
        self.state_store = state_store
        self.max_workers = max_workers
        self.backoff = backoff
        self.channel_name = channel_name
        self.renderer = renderer

    def dispatch(
        self,
        jobs: Sequence[NotificationJob],
        cancel: Optional[threading.Event] = None
    ) -> List[JobResult]:
        """
        Send a batch of jobs.

        Args:
            jobs: Jobs in routed order
            cancel: Event set on shutdown; unsent jobs are then cancelled

        Returns:
            One JobResult per job, in the same order as jobs
        """
        if not jobs:
            return []

        groups: Dict[str, List[Tuple[int, NotificationJob]]] = OrderedDict()
        for index, job in enumerate(jobs):
            groups.setdefault(job.subscriber.subscriber_id, []).append((index, job))

        logger.info(
            f"Dispatching {len(jobs)} jobs to {len(groups)} subscribers"
        )

        results: List[Optional[JobResult]] = [None] * len(jobs)
        workers = max(1, min(self.max_workers, len(groups)))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='dispatch') as executor:
            futures = {
                executor.submit(self._dispatch_group, group, cancel): subscriber_id
                for subscriber_id, group in groups.items()
            }
            for future in as_completed(futures):
                for index, result in future.result():
                    results[index] = result

        self._remove_failed_subscribers(results)
        self._log_summary(results)
        return results

    def _dispatch_group(
        self,
        group: List[Tuple[int, NotificationJob]],
        cancel: Optional[threading.Event]
    ) -> List[Tuple[int, JobResult]]:
        """Send one subscriber's jobs in order, stopping after a permanent failure."""
        results = []
        subscriber_gone = False

        for index, job in group:
            if subscriber_gone:
                results.append((index, JobResult(
                    job=job,
                    outcome=JobOutcome.SKIPPED,
                    detail='subscriber failed permanently earlier in batch'
                )))
                continue

            result = self._send_with_retry(job, cancel)
            results.append((index, result))
            if result.outcome == JobOutcome.PERMANENT_FAILURE:
                subscriber_gone = True

        return results

    def _send_with_retry(
        self,
        job: NotificationJob,
        cancel: Optional[threading.Event]
    ) -> JobResult:
        """
        Send one job, retrying transient failures.

        Args:
            job: Job to send
            cancel: Shutdown event

        Returns:
            JobResult with the final outcome
        """
        try:
            message = self.renderer(job, self.channel_name)
        except Exception as e:
            logger.error(f"Failed to render job {job.idempotency_key[:12]}: {e}", exc_info=True)
            return JobResult(job=job, outcome=JobOutcome.PERMANENT_FAILURE, detail=f"render: {e}")

        detail = ''
        outcome = JobOutcome.TRANSIENT_FAILURE
        attempts = 0

        for attempt in range(self.backoff.max_attempts):
            if cancel is not None and cancel.is_set():
                return JobResult(job=job, outcome=JobOutcome.CANCELLED, attempts=attempts)

            attempts = attempt + 1
            try:
                status = self.messenger.send(
                    job.subscriber.destination,
                    message,
                    job.idempotency_key
                )
                detail = status.value
            except Exception as e:
                # Messenger bugs and unexpected transport errors count as transient
                logger.warning(f"Messenger raised for job {job.idempotency_key[:12]}: {e}")
                status = DeliveryStatus.TRANSIENT
                detail = str(e)

            retry, outcome = self.POLICY[status]
            if not retry:
                break

            if attempt < self.backoff.max_attempts - 1:
                delay = self.backoff.delay(attempt)
                logger.warning(
                    f"Transient failure for subscriber {job.subscriber.subscriber_id} "
                    f"(attempt {attempts}/{self.backoff.max_attempts}). "
                    f"Retrying in {delay:.2f} seconds..."
                )
                if self._wait(delay, cancel):
                    return JobResult(job=job, outcome=JobOutcome.CANCELLED, attempts=attempts, detail=detail)

        return JobResult(job=job, outcome=outcome, attempts=attempts, detail=detail)

    def _wait(self, delay: float, cancel: Optional[threading.Event]) -> bool:
        """Sleep for delay seconds; return True if cancelled meanwhile."""
        if cancel is not None:
            return cancel.wait(delay)
        time.sleep(delay)
        return False

    def _remove_failed_subscribers(self, results: List[JobResult]) -> List[str]:
        """
        Remove each subscriber with a permanently failed job, once.

        Returns:
            Identifiers of subscribers actually removed
        """
        failed_ids = list(OrderedDict.fromkeys(
            result.job.subscriber.subscriber_id for result in results
            if result.outcome == JobOutcome.PERMANENT_FAILURE
        ))
        if not failed_ids or self.state_store is None:
            return []

        removed = []
        for subscriber_id in failed_ids:
            try:
                self.state_store.remove_subscriber(subscriber_id)
                removed.append(subscriber_id)
                logger.warning(f"Removed subscriber {subscriber_id} after permanent delivery failure")
            except (StoreUnavailableError, ClientError) as e:
                # The subscriber is retried on its next permanent failure
                logger.error(f"Could not remove subscriber {subscriber_id}: {e}")
        return removed

    def _log_summary(self, results: List[JobResult]) -> None:
        """Log the batch summary and every job that will not be retried."""
        for result in results:
            if result.outcome != JobOutcome.TRANSIENT_FAILURE:
                continue
            logger.error(
                f"Notification dropped after {result.attempts} attempts",
                extra={
                    'subscriber_id': result.job.subscriber.subscriber_id,
                    'event_id': result.job.event.event_id,
                    'change_kind': result.job.kind.value,
                    'idempotency_key': result.job.idempotency_key,
                    'detail': result.detail
                }
            )

        delivered = sum(1 for r in results if r.outcome == JobOutcome.DELIVERED)
        logger.info(f"Dispatch complete: {delivered}/{len(results)} delivered")
