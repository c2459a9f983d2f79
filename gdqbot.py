"""Process entry point for the GDQ schedule notification bot."""
import json
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Optional

from notifications.discord_webhook import DiscordWebhookMessenger
from notifications.dispatcher import Dispatcher
from notifications.models import Subscriber
from poller.poll_loop import PollLoopController
from processor.errors import ConfigurationError, StoreUnavailableError
from scraper.gdq_schedule import GdqScheduleScraper
from storage.state_store import StateStoreAdapter

# Attributes every LogRecord has; anything else came in through extra=
_RESERVED_RECORD_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including fields passed via extra."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Create new handler with JSON formatter
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    # Set log level
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass(frozen=True)
class BotConfig:
    """Runtime configuration read from the environment."""
    table_name: str = 'gdqbot-state'
    region_name: Optional[str] = None
    log_level: str = 'INFO'
    schedule_url: str = GdqScheduleScraper.BASE_URL
    poll_interval_seconds: float = 60.0
    poll_jitter_ratio: float = 0.1
    timeout_seconds: int = 30
    store_timeout_seconds: float = 5.0
    dispatch_workers: int = 16
    webhook_url: str = ''
    twitch_channel_name: str = 'gamesdonequick'
    shutdown_deadline_seconds: float = 30.0


def _env_number(name: str, default: str, cast, minimum: float = 0):
    raw = os.environ.get(name, default)
    try:
        value = cast(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
    if value < minimum:
        raise ConfigurationError(f"{name} must be at least {minimum}, got {value}")
    return value


def load_config() -> BotConfig:
    """
    Read configuration from environment variables.

    Raises:
        ConfigurationError: If a numeric variable is invalid
    """
    return BotConfig(
        table_name=os.environ.get('TABLE_NAME', 'gdqbot-state'),
        region_name=os.environ.get('AWS_REGION') or None,
        log_level=os.environ.get('LOG_LEVEL', 'INFO'),
        schedule_url=os.environ.get('SCHEDULE_URL', GdqScheduleScraper.BASE_URL),
        poll_interval_seconds=_env_number('POLL_INTERVAL_SECONDS', '60', float, minimum=1),
        poll_jitter_ratio=_env_number('POLL_JITTER_RATIO', '0.1', float),
        timeout_seconds=_env_number('TIMEOUT_SECONDS', '30', int, minimum=1),
        store_timeout_seconds=_env_number('STORE_TIMEOUT_SECONDS', '5', float, minimum=0.1),
        dispatch_workers=_env_number('DISPATCH_WORKERS', '16', int, minimum=1),
        webhook_url=os.environ.get('WEBHOOK_URL', ''),
        twitch_channel_name=os.environ.get('TWITCH_CHANNEL_NAME', 'gamesdonequick'),
        shutdown_deadline_seconds=_env_number('SHUTDOWN_DEADLINE_SECONDS', '30', float),
    )


def build_controller(config: BotConfig) -> PollLoopController:
    """Instantiate all components and wire them into a controller."""
    scraper = GdqScheduleScraper(url=config.schedule_url, timeout=config.timeout_seconds)
    state_store = StateStoreAdapter(
        table_name=config.table_name,
        region_name=config.region_name,
        timeout=config.store_timeout_seconds
    )
    dispatcher = Dispatcher(
        messenger=DiscordWebhookMessenger(timeout=config.timeout_seconds),
        state_store=state_store,
        max_workers=config.dispatch_workers,
        channel_name=config.twitch_channel_name
    )
    return PollLoopController(
        source=scraper,
        state_store=state_store,
        dispatcher=dispatcher,
        interval=config.poll_interval_seconds,
        jitter_ratio=config.poll_jitter_ratio
    )


def seed_default_subscriber(state_store: StateStoreAdapter, webhook_url: str) -> Optional[Subscriber]:
    """
    Register the webhook from WEBHOOK_URL as an all-events subscriber.

    Returns:
        The seeded Subscriber, or None if no URL is configured
    """
    if not webhook_url:
        return None
    subscriber = Subscriber.for_webhook(webhook_url)
    state_store.upsert_subscriber(subscriber)
    return subscriber


def main() -> int:
    """
    Run the bot until SIGTERM or SIGINT.

    Returns:
        Process exit code
    """
    try:
        config = load_config()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error(f"Invalid configuration: {e}")
        return 1

    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)
    logger.info(
        "GDQBot starting",
        extra={
            'table_name': config.table_name,
            'schedule_url': config.schedule_url,
            'poll_interval_seconds': config.poll_interval_seconds,
            'dispatch_workers': config.dispatch_workers
        }
    )

    controller = build_controller(config)

    try:
        seeded = seed_default_subscriber(controller.state_store, config.webhook_url)
        if seeded:
            logger.info(f"Seeded default subscriber {seeded.subscriber_id}")
    except StoreUnavailableError as e:
        # The registry keeps whatever it had; the next restart retries
        logger.warning(f"Could not seed default subscriber: {e}")

    shutdown = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    controller.start()
    shutdown.wait()
    finished = controller.stop(deadline=config.shutdown_deadline_seconds)

    logger.info("GDQBot stopped", extra={'clean_shutdown': finished})
    return 0


if __name__ == '__main__':
    sys.exit(main())
