"""Data models for schedule snapshots and diffs."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Tuple

from processor.errors import MalformedScheduleError


# Fields whose change between two polls counts as an update
MUTABLE_FIELDS = ('name', 'start_time', 'position')


class ChangeKind(str, Enum):
    """Kind of change an event went through between two snapshots."""
    ADDED = 'added'
    REMOVED = 'removed'
    UPDATED = 'updated'


@dataclass
class RawRun:
    """Raw run record as scraped from the schedule page."""
    run_id: Optional[str]
    name: Optional[str]
    start_time: Optional[str]
    estimate: Optional[str]
    category: str = ''
    runners: str = ''


@dataclass(frozen=True)
class Event:
    """One scheduled run of the marathon."""
    event_id: str
    name: str
    start_time: datetime
    estimate: timedelta
    position: int
    category: str = ''
    runners: str = ''

    @property
    def end_time(self) -> datetime:
        return self.start_time + self.estimate

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'name': self.name,
            'start_time': self.start_time.isoformat(),
            'estimate_seconds': int(self.estimate.total_seconds()),
            'position': self.position,
            'category': self.category,
            'runners': self.runners,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Event':
        return cls(
            event_id=data['event_id'],
            name=data['name'],
            start_time=datetime.fromisoformat(data['start_time']),
            estimate=timedelta(seconds=int(data['estimate_seconds'])),
            position=int(data['position']),
            category=data.get('category', ''),
            runners=data.get('runners', ''),
        )


@dataclass(frozen=True)
class FieldChange:
    """Before/after values of one mutable field."""
    field: str
    before: Any
    after: Any


@dataclass(frozen=True)
class EventUpdate:
    """An event present in both snapshots with at least one changed field."""
    event_id: str
    before: Event
    after: Event
    changes: Tuple[FieldChange, ...]

    def changed_fields(self) -> Tuple[str, ...]:
        return tuple(change.field for change in self.changes)


@dataclass(frozen=True)
class Diff:
    """Changes between two snapshots, keyed by event identifier."""
    current_version: int
    prior_version: Optional[int] = None
    added: Dict[str, Event] = field(default_factory=dict)
    removed: Dict[str, Event] = field(default_factory=dict)
    updated: Dict[str, EventUpdate] = field(default_factory=dict)

    @property
    def is_bootstrap(self) -> bool:
        """True when there was no prior snapshot to compare against."""
        return self.prior_version is None

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.updated)

    def changes(self) -> Iterator[Tuple[ChangeKind, Event, Optional[EventUpdate]]]:
        """
        Iterate over every change in the diff.

        Yields:
            (kind, event, update) tuples. For removed events the event is the
            last known version; update is only set for UPDATED changes.
        """
        for event in self.added.values():
            yield ChangeKind.ADDED, event, None
        for update in self.updated.values():
            yield ChangeKind.UPDATED, update.after, update
        for event in self.removed.values():
            yield ChangeKind.REMOVED, event, None


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time view of the whole schedule."""
    version: int
    events: Tuple[Event, ...]

    def __post_init__(self):
        seen = set()
        for event in self.events:
            if event.event_id in seen:
                raise MalformedScheduleError(
                    f"Duplicate event id in snapshot: {event.event_id}"
                )
            seen.add(event.event_id)

    def by_id(self) -> Dict[str, Event]:
        return {event.event_id: event for event in self.events}

    def compare(self, prior: Optional['Snapshot']) -> Diff:
        """Compute the diff from prior to this snapshot."""
        from processor.diff_engine import diff
        return diff(prior, self)
