"""Field-level diff between two schedule snapshots."""
import logging
from typing import Optional, Tuple

from processor.models import (
    Diff,
    Event,
    EventUpdate,
    FieldChange,
    MUTABLE_FIELDS,
    Snapshot,
)

logger = logging.getLogger(__name__)


def diff(prior: Optional[Snapshot], current: Snapshot) -> Diff:
    """
    Compute the changes between the prior and current snapshot.

    Events are matched by identifier. Only the mutable fields are compared,
    so churn in informational fields never produces an update. With no
    prior snapshot every event is reported as added and the diff is marked
    as a bootstrap diff.

    Args:
        prior: Last persisted snapshot, or None on first run
        current: Snapshot built from the latest fetch

    Returns:
        Diff with disjoint added, removed and updated maps
    """
    current_events = current.by_id()

    if prior is None:
        logger.info(
            f"No prior snapshot, treating {len(current_events)} events as baseline"
        )
        return Diff(current_version=current.version, added=current_events)

    prior_events = prior.by_id()

    added = {
        event_id: event for event_id, event in current_events.items()
        if event_id not in prior_events
    }

    removed = {
        event_id: event for event_id, event in prior_events.items()
        if event_id not in current_events
    }

    updated = {}
    for event_id, event in current_events.items():
        if event_id not in prior_events:
            continue
        changes = _field_changes(prior_events[event_id], event)
        if changes:
            updated[event_id] = EventUpdate(
                event_id=event_id,
                before=prior_events[event_id],
                after=event,
                changes=changes
            )

    logger.info(
        f"Diff {prior.version} -> {current.version}: {len(added)} added, "
        f"{len(updated)} updated, {len(removed)} removed"
    )

    return Diff(
        current_version=current.version,
        prior_version=prior.version,
        added=added,
        removed=removed,
        updated=updated
    )


def _field_changes(before: Event, after: Event) -> Tuple[FieldChange, ...]:
    """Compare the mutable fields of two versions of the same event."""
    return tuple(
        FieldChange(
            field=field_name,
            before=getattr(before, field_name),
            after=getattr(after, field_name)
        )
        for field_name in MUTABLE_FIELDS
        if getattr(before, field_name) != getattr(after, field_name)
    )
