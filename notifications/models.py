"""Data models for subscribers and notification jobs."""
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from processor.models import ChangeKind, Event, EventUpdate


class FilterMode(str, Enum):
    ALL = 'all'
    STARTING_WITHIN = 'starting_within'


class DeliveryStatus(str, Enum):
    """Result of one send attempt through the messaging platform."""
    OK = 'ok'
    TRANSIENT = 'transient'
    PERMANENT = 'permanent'


class JobOutcome(str, Enum):
    """Final outcome of a notification job after the dispatcher's policy."""
    DELIVERED = 'delivered'
    TRANSIENT_FAILURE = 'transient_failure'
    PERMANENT_FAILURE = 'permanent_failure'
    SKIPPED = 'skipped'
    CANCELLED = 'cancelled'


@dataclass(frozen=True)
class SubscriberFilter:
    """Persistable predicate deciding which changes a subscriber hears about."""
    mode: FilterMode = FilterMode.ALL
    window_minutes: int = 0
    keywords: Tuple[str, ...] = ()
    change_kinds: Tuple[ChangeKind, ...] = ()

    def accepts(self, event: Event, kind: ChangeKind, now: datetime) -> bool:
        """
        Evaluate the filter against one changed event.

        Args:
            event: Event as it is after the change (last known if removed)
            kind: Kind of change
            now: Current time, timezone-aware

        Returns:
            True if the subscriber should be notified
        """
        if self.change_kinds and kind not in self.change_kinds:
            return False

        if self.keywords:
            name = event.name.lower()
            if not any(keyword.lower() in name for keyword in self.keywords):
                return False

        if self.mode == FilterMode.STARTING_WITHIN:
            window_end = now + timedelta(minutes=self.window_minutes)
            running = event.start_time <= now < event.end_time
            upcoming = now <= event.start_time <= window_end
            return running or upcoming

        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mode': self.mode.value,
            'window_minutes': self.window_minutes,
            'keywords': list(self.keywords),
            'change_kinds': [kind.value for kind in self.change_kinds],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SubscriberFilter':
        return cls(
            mode=FilterMode(data.get('mode', FilterMode.ALL.value)),
            window_minutes=int(data.get('window_minutes', 0)),
            keywords=tuple(data.get('keywords') or ()),
            change_kinds=tuple(ChangeKind(kind) for kind in data.get('change_kinds') or ()),
        )


@dataclass(frozen=True)
class Subscriber:
    """Registered notification destination."""
    subscriber_id: str
    destination: str
    filter: SubscriberFilter = field(default_factory=SubscriberFilter)

    @classmethod
    def for_webhook(cls, webhook_url: str) -> 'Subscriber':
        """Subscriber receiving all changes, keyed by a hash of its webhook URL."""
        digest = hashlib.sha256(webhook_url.encode('utf-8')).hexdigest()
        return cls(subscriber_id=f"webhook-{digest[:16]}", destination=webhook_url)


@dataclass(frozen=True)
class NotificationJob:
    """One message to one subscriber about one event change."""
    subscriber: Subscriber
    event: Event
    kind: ChangeKind
    snapshot_version: int
    update: Optional[EventUpdate] = None

    @property
    def idempotency_key(self) -> str:
        """
        Deterministic key for this job.

        Re-dispatching the same diff after a crash yields the same keys, so
        a collaborator deduplicating by key shows each message once.
        """
        composite = (
            f"{self.subscriber.subscriber_id}|{self.event.event_id}|"
            f"{self.kind.value}|{self.snapshot_version}"
        )
        return hashlib.sha256(composite.encode('utf-8')).hexdigest()


@dataclass
class JobResult:
    """Outcome of dispatching one job."""
    job: NotificationJob
    outcome: JobOutcome
    attempts: int = 0
    detail: str = ''


@dataclass(frozen=True)
class RenderedMessage:
    """Human-readable notification ready to be sent."""
    title: str
    description: str
