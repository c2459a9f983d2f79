"""Tests for the process entry point: config, logging and wiring."""
import json
import logging
import os
import signal
import sys
from unittest.mock import Mock, patch

import pytest

from gdqbot import (
    BotConfig,
    JsonFormatter,
    build_controller,
    load_config,
    main,
    seed_default_subscriber,
    setup_logging,
)
from notifications.models import Subscriber
from processor.errors import ConfigurationError, StoreUnavailableError


@pytest.fixture
def clean_env():
    """Remove bot variables so defaults apply."""
    names = [
        'TABLE_NAME', 'AWS_REGION', 'LOG_LEVEL', 'SCHEDULE_URL', 'POLL_INTERVAL_SECONDS',
        'POLL_JITTER_RATIO', 'TIMEOUT_SECONDS', 'STORE_TIMEOUT_SECONDS', 'DISPATCH_WORKERS',
        'WEBHOOK_URL', 'TWITCH_CHANNEL_NAME', 'SHUTDOWN_DEADLINE_SECONDS'
    ]
    saved = {name: os.environ.pop(name) for name in names if name in os.environ}
    yield
    os.environ.update(saved)


class TestConfig:
    """Test cases for load_config()."""

    def test_defaults(self, clean_env):
        config = load_config()

        assert config == BotConfig()
        assert config.poll_interval_seconds == 60.0
        assert config.dispatch_workers == 16
        assert config.twitch_channel_name == 'gamesdonequick'
        assert config.schedule_url == 'https://gamesdonequick.com/schedule'

    def test_environment_overrides(self, clean_env):
        env_vars = {
            'TABLE_NAME': 'prod-state',
            'AWS_REGION': 'eu-north-1',
            'POLL_INTERVAL_SECONDS': '120',
            'POLL_JITTER_RATIO': '0.2',
            'DISPATCH_WORKERS': '4',
            'WEBHOOK_URL': 'https://discord.test/hook',
            'TWITCH_CHANNEL_NAME': 'gdq'
        }
        with patch.dict(os.environ, env_vars):
            config = load_config()

        assert config.table_name == 'prod-state'
        assert config.region_name == 'eu-north-1'
        assert config.poll_interval_seconds == 120.0
        assert config.poll_jitter_ratio == 0.2
        assert config.dispatch_workers == 4
        assert config.webhook_url == 'https://discord.test/hook'
        assert config.twitch_channel_name == 'gdq'

    def test_invalid_number_raises(self, clean_env):
        with patch.dict(os.environ, {'POLL_INTERVAL_SECONDS': 'soon'}):
            with pytest.raises(ConfigurationError, match='POLL_INTERVAL_SECONDS'):
                load_config()

    def test_out_of_range_number_raises(self, clean_env):
        with patch.dict(os.environ, {'DISPATCH_WORKERS': '0'}):
            with pytest.raises(ConfigurationError, match='DISPATCH_WORKERS'):
                load_config()


class TestLogging:
    """Test cases for JSON logging."""

    def test_json_formatter_includes_extra_fields(self):
        record = logging.makeLogRecord({
            'name': 'poller.poll_loop',
            'levelname': 'INFO',
            'msg': 'Cycle finished',
            'events_added': 3
        })

        data = json.loads(JsonFormatter().format(record))

        assert data['message'] == 'Cycle finished'
        assert data['level'] == 'INFO'
        assert data['logger'] == 'poller.poll_loop'
        assert data['events_added'] == 3
        assert 'timestamp' in data

    def test_json_formatter_includes_exception(self):
        try:
            raise ValueError('bad value')
        except ValueError:
            record = logging.makeLogRecord({
                'name': 'test',
                'levelname': 'ERROR',
                'msg': 'failed',
                'exc_info': sys.exc_info()
            })

        data = json.loads(JsonFormatter().format(record))

        assert 'ValueError: bad value' in data['exception']

    def test_setup_logging_replaces_handlers(self):
        root_logger = logging.getLogger()
        saved_handlers = root_logger.handlers[:]
        saved_level = root_logger.level
        try:
            setup_logging('DEBUG')

            assert len(root_logger.handlers) == 1
            assert isinstance(root_logger.handlers[0].formatter, JsonFormatter)
            assert root_logger.level == logging.DEBUG
        finally:
            root_logger.handlers = saved_handlers
            root_logger.setLevel(saved_level)


class TestWiring:
    """Test cases for component wiring and startup."""

    @patch('gdqbot.StateStoreAdapter')
    @patch('gdqbot.GdqScheduleScraper')
    def test_build_controller(self, mock_scraper_class, mock_store_class):
        config = BotConfig(
            table_name='t',
            schedule_url='https://example.com/schedule',
            poll_interval_seconds=90,
            dispatch_workers=3,
            twitch_channel_name='gdq'
        )

        controller = build_controller(config)

        mock_scraper_class.assert_called_once_with(url='https://example.com/schedule', timeout=30)
        mock_store_class.assert_called_once_with(table_name='t', region_name=None, timeout=5.0)
        assert controller.interval == 90
        assert controller.dispatcher.max_workers == 3
        assert controller.dispatcher.channel_name == 'gdq'
        assert controller.dispatcher.state_store is mock_store_class.return_value

    def test_seed_default_subscriber(self):
        store = Mock()

        seeded = seed_default_subscriber(store, 'https://discord.test/hook')

        assert seeded == Subscriber.for_webhook('https://discord.test/hook')
        store.upsert_subscriber.assert_called_once_with(seeded)

    def test_seed_without_url_does_nothing(self):
        store = Mock()

        assert seed_default_subscriber(store, '') is None
        store.upsert_subscriber.assert_not_called()

    @patch('gdqbot.setup_logging')
    @patch('gdqbot.signal.signal')
    @patch('gdqbot.build_controller')
    def test_main_runs_until_signal(self, mock_build, mock_signal, mock_setup_logging, clean_env):
        """Test that main starts the controller and stops it on SIGTERM."""
        controller = mock_build.return_value
        controller.stop.return_value = True

        def start():
            handlers = {call[0][0]: call[0][1] for call in mock_signal.call_args_list}
            handlers[signal.SIGTERM](signal.SIGTERM, None)

        controller.start.side_effect = start

        with patch.dict(os.environ, {'WEBHOOK_URL': 'https://discord.test/hook'}):
            exit_code = main()

        assert exit_code == 0
        controller.start.assert_called_once()
        controller.stop.assert_called_once_with(deadline=30.0)
        controller.state_store.upsert_subscriber.assert_called_once()

    @patch('gdqbot.setup_logging')
    @patch('gdqbot.signal.signal')
    @patch('gdqbot.build_controller')
    def test_main_survives_seed_failure(self, mock_build, mock_signal, mock_setup_logging, clean_env):
        controller = mock_build.return_value
        controller.state_store.upsert_subscriber.side_effect = StoreUnavailableError('down')
        controller.start.side_effect = lambda: mock_signal.call_args_list[0][0][1](signal.SIGINT, None)

        with patch.dict(os.environ, {'WEBHOOK_URL': 'https://discord.test/hook'}):
            assert main() == 0

        controller.stop.assert_called_once()

    @patch('gdqbot.setup_logging')
    @patch('gdqbot.build_controller')
    def test_main_invalid_config_exits_nonzero(self, mock_build, mock_setup_logging, clean_env):
        with patch.dict(os.environ, {'TIMEOUT_SECONDS': 'forever'}):
            assert main() == 1

        mock_build.assert_not_called()
