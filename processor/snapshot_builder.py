"""Builds validated schedule snapshots from raw scraped runs."""
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from processor.errors import MalformedScheduleError
from processor.models import Event, RawRun, Snapshot

logger = logging.getLogger(__name__)


class SnapshotBuilder:
    """Validates and normalizes raw runs into an immutable Snapshot."""

    MAX_NAME_LENGTH = 200

    def build(self, raw_runs: List[RawRun], version: int) -> Snapshot:
        """
        Build a snapshot from the raw runs of one fetch.

        Unlike a best-effort import, a single bad run rejects the whole
        schedule: a partial snapshot would be diffed as mass removals.

        Args:
            raw_runs: Runs in schedule order, as returned by the scraper
            version: Monotonic version marker for the snapshot

        Returns:
            Snapshot with events positioned by run order

        Raises:
            MalformedScheduleError: On an empty schedule, a missing or
                unparsable required field, or a duplicate identifier
        """
        if not raw_runs:
            raise MalformedScheduleError("Schedule source returned no runs")

        events = []
        seen_ids = set()
        for position, run in enumerate(raw_runs, start=1):
            event = self._build_event(run, position)
            if event.event_id in seen_ids:
                raise MalformedScheduleError(
                    f"Duplicate run id {event.event_id!r} at position {position}"
                )
            seen_ids.add(event.event_id)
            events.append(event)

        logger.info(f"Built snapshot version {version} with {len(events)} events")
        return Snapshot(version=version, events=tuple(events))

    def _build_event(self, run: RawRun, position: int) -> Event:
        """
        Validate and normalize a single run.

        Args:
            run: Raw run record
            position: 1-based ordinal in run order

        Returns:
            Event object
        """
        for field_name in ('run_id', 'name', 'start_time', 'estimate'):
            value = getattr(run, field_name)
            if value is None or not str(value).strip():
                raise MalformedScheduleError(
                    f"Run at position {position} missing required field: {field_name}"
                )

        start_time = self._parse_start_time(run.start_time)
        if start_time is None:
            raise MalformedScheduleError(
                f"Invalid start time for run {run.run_id!r}: {run.start_time!r}"
            )

        estimate = self._parse_duration(run.estimate)
        if estimate is None:
            raise MalformedScheduleError(
                f"Invalid estimate for run {run.run_id!r}: {run.estimate!r}"
            )

        return Event(
            event_id=run.run_id.strip(),
            name=run.name.strip()[:self.MAX_NAME_LENGTH],
            start_time=start_time,
            estimate=estimate,
            position=position,
            category=(run.category or '').strip(),
            runners=(run.runners or '').strip(),
        )

    def _parse_start_time(self, value: str) -> Optional[datetime]:
        """
        Parse an ISO 8601 start time and normalize it to UTC.

        Naive timestamps are taken as UTC.
        """
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    def _parse_duration(self, value: str) -> Optional[timedelta]:
        """
        Parse an H:MM:SS or MM:SS duration.

        Args:
            value: Duration text (e.g., "1:30:00")

        Returns:
            timedelta or None if parsing fails
        """
        parts = value.strip().split(':')
        if len(parts) not in (2, 3):
            return None
        try:
            numbers = [int(part) for part in parts]
        except ValueError:
            return None
        if any(number < 0 for number in numbers):
            return None
        if len(numbers) == 2:
            numbers.insert(0, 0)
        hours, minutes, seconds = numbers
        return timedelta(hours=hours, minutes=minutes, seconds=seconds)


def next_version(prior_version: Optional[int], now_ms: Optional[int] = None) -> int:
    """
    Version marker for a new snapshot.

    Uses the fetch time in milliseconds, bumped past the prior version so
    versions stay strictly increasing even if the clock goes backwards.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if prior_version is not None and now_ms <= prior_version:
        return prior_version + 1
    return now_ms
