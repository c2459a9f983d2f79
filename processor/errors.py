"""Error taxonomy for the schedule sync core."""


class GdqBotError(Exception):
    """Base class for all bot errors."""


class ConfigurationError(GdqBotError):
    """Invalid configuration discovered at startup."""


class ScheduleFetchError(GdqBotError):
    """The schedule source could not be reached after retries."""


class MalformedScheduleError(GdqBotError):
    """The schedule source returned incomplete or inconsistent data."""


class StoreUnavailableError(GdqBotError):
    """The remote key-value store did not answer after retries."""


class CorruptSnapshotError(MalformedScheduleError):
    """The persisted snapshot exists but cannot be decoded."""

    def __init__(self, message: str, stored_version=None):
        super().__init__(message)
        # Raw version attribute of the bad item, used to replace it conditionally
        self.stored_version = stored_version
