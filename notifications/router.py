"""Maps schedule diffs to per-subscriber notification jobs."""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from notifications.models import NotificationJob, Subscriber
from processor.models import Diff

logger = logging.getLogger(__name__)


def route(
    diff: Diff,
    subscribers: Sequence[Subscriber],
    now: Optional[datetime] = None
) -> List[NotificationJob]:
    """
    Turn a diff into notification jobs.

    Jobs are grouped by subscriber, in the order subscribers are given, and
    ordered by event start time within each group so a subscriber sees its
    notifications in run order. A bootstrap diff never produces jobs.

    Args:
        diff: Changes computed for this poll cycle
        subscribers: Registered subscribers
        now: Reference time for time-window filters (default: current UTC)

    Returns:
        List of NotificationJob objects
    """
    if diff.is_bootstrap:
        logger.info("Bootstrap diff, establishing baseline without notifications")
        return []

    if diff.is_empty or not subscribers:
        return []

    if now is None:
        now = datetime.now(timezone.utc)

    changes = sorted(
        diff.changes(),
        key=lambda change: (change[1].start_time, change[1].position, change[1].event_id)
    )

    jobs = []
    for subscriber in subscribers:
        for kind, event, update in changes:
            if not subscriber.filter.accepts(event, kind, now):
                continue
            jobs.append(
                NotificationJob(
                    subscriber=subscriber,
                    event=event,
                    kind=kind,
                    snapshot_version=diff.current_version,
                    update=update
                )
            )

    logger.info(
        f"Routed {len(changes)} changes to {len(jobs)} jobs "
        f"for {len(subscribers)} subscribers"
    )
    return jobs
