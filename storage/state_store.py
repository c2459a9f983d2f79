"""DynamoDB-backed store for the last snapshot and the subscriber registry."""
import json
import logging
import time
from enum import Enum
from typing import Callable, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from notifications.models import Subscriber, SubscriberFilter
from processor.backoff import BackoffPolicy, STORE_BACKOFF
from processor.errors import CorruptSnapshotError, StoreUnavailableError
from processor.models import Event, Snapshot

logger = logging.getLogger(__name__)

SNAPSHOT_PK = 'snapshot'
SNAPSHOT_SK = 'current'
SUBSCRIBER_PK = 'subscriber'

TRANSIENT_ERROR_CODES = {
    'InternalServerError',
    'ProvisionedThroughputExceededException',
    'RequestLimitExceeded',
    'ServiceUnavailable',
    'ThrottlingException',
}

TRANSIENT_EXCEPTIONS = (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


class SaveOutcome(str, Enum):
    OK = 'ok'
    CONFLICT = 'conflict'
    UNAVAILABLE = 'unavailable'


class RemoveOutcome(str, Enum):
    OK = 'ok'
    NOT_FOUND = 'not_found'


class StateStoreAdapter:
    """
    Sole reader and writer of persisted bot state.

    Layout in a single table keyed by (pk, sk):
        snapshot   / current          -> last snapshot and its version
        subscriber / <subscriber_id>  -> one item per subscriber
    """

    def __init__(
        self,
        table_name: str,
        region_name: Optional[str] = None,
        timeout: float = 5,
        backoff: BackoffPolicy = STORE_BACKOFF,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize DynamoDB resource and table reference.

        botocore's own retries are disabled so the backoff policy here is
        the only retry layer.

        Args:
            table_name: Name of the DynamoDB table
            region_name: AWS region (default: boto3 resolution chain)
            timeout: Connect and read timeout in seconds
            backoff: Retry policy for transient store errors
            sleep: Sleep function used between attempts
        """
        self.table_name = table_name
        self.backoff = backoff
        self.sleep = sleep
        config = Config(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={'total_max_attempts': 1}
        )
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name, config=config)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized StateStoreAdapter for table: {table_name}")

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def load_snapshot(self) -> Optional[Snapshot]:
        """
        Read the last persisted snapshot.

        Returns:
            Snapshot, or None if no snapshot was ever saved

        Raises:
            StoreUnavailableError: If the store did not answer after retries
            CorruptSnapshotError: If the stored item cannot be decoded; its
                stored_version lets a new snapshot replace it
        """
        response = self._call(
            'load snapshot',
            lambda: self.table.get_item(
                Key={'pk': SNAPSHOT_PK, 'sk': SNAPSHOT_SK},
                ConsistentRead=True
            )
        )
        item = response.get('Item')
        if item is None:
            logger.info("No snapshot stored yet")
            return None

        try:
            events = tuple(Event.from_dict(data) for data in json.loads(item['events']))
            snapshot = Snapshot(version=int(item['version']), events=events)
        except (KeyError, ValueError, TypeError) as e:
            raise CorruptSnapshotError(
                f"Stored snapshot cannot be decoded: {e}",
                stored_version=_stored_version(item)
            ) from e

        logger.info(f"Loaded snapshot version {snapshot.version} with {len(events)} events")
        return snapshot

    def save_snapshot(self, snapshot: Snapshot, expected_version: Optional[int]) -> SaveOutcome:
        """
        Persist a snapshot if the stored version is still the one we read.

        Args:
            snapshot: Snapshot to persist
            expected_version: Version read at the start of the cycle, or None
                if no versioned snapshot existed

        Returns:
            SaveOutcome.OK, CONFLICT if another writer advanced the stored
            version, or UNAVAILABLE if the store did not answer after retries
        """
        events_json = self._encode_events(snapshot)
        item = {
            'pk': SNAPSHOT_PK,
            'sk': SNAPSHOT_SK,
            'version': snapshot.version,
            'events': events_json,
            'updated_at': int(time.time())
        }

        if expected_version is None:
            # Also true for an item that lost its version attribute
            condition = Attr('version').not_exists()
        else:
            condition = Attr('version').eq(expected_version)

        attempts = []

        def put():
            attempts.append(1)
            return self.table.put_item(Item=item, ConditionExpression=condition)

        try:
            self._call('save snapshot', put)
        except StoreUnavailableError as e:
            logger.error(f"Snapshot version {snapshot.version} not saved: {e}")
            return SaveOutcome.UNAVAILABLE
        except ClientError as e:
            if _error_code(e) != 'ConditionalCheckFailedException':
                raise
            # Only a retried put can have landed on an earlier attempt of this call
            if len(attempts) > 1 and self._stored_matches(snapshot.version, events_json):
                logger.info(f"Snapshot version {snapshot.version} already stored")
                return SaveOutcome.OK
            logger.warning(
                f"Conflict saving snapshot version {snapshot.version}: "
                f"stored version is no longer {expected_version}"
            )
            return SaveOutcome.CONFLICT

        logger.info(f"Saved snapshot version {snapshot.version}")
        return SaveOutcome.OK

    def _stored_matches(self, version: int, events_json: str) -> bool:
        """Check whether the stored snapshot is exactly the given one."""
        try:
            response = self._call(
                'verify snapshot',
                lambda: self.table.get_item(
                    Key={'pk': SNAPSHOT_PK, 'sk': SNAPSHOT_SK},
                    ConsistentRead=True
                )
            )
        except StoreUnavailableError:
            return False
        item = response.get('Item') or {}
        return _stored_version(item) == version and item.get('events') == events_json

    def _encode_events(self, snapshot: Snapshot) -> str:
        return json.dumps([event.to_dict() for event in snapshot.events], sort_keys=True)

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def list_subscribers(self) -> List[Subscriber]:
        """
        Read every registered subscriber.

        Returns:
            List of Subscriber objects ordered by subscriber id

        Raises:
            StoreUnavailableError: If the store did not answer after retries
        """
        query = {'KeyConditionExpression': Key('pk').eq(SUBSCRIBER_PK)}
        response = self._call('list subscribers', lambda: self.table.query(**query))
        items = response.get('Items', [])

        # Handle pagination
        while 'LastEvaluatedKey' in response:
            page = dict(query, ExclusiveStartKey=response['LastEvaluatedKey'])
            response = self._call('list subscribers', lambda: self.table.query(**page))
            items.extend(response.get('Items', []))

        subscribers = []
        for item in items:
            subscriber = self._item_to_subscriber(item)
            if subscriber:
                subscribers.append(subscriber)

        logger.info(f"Retrieved {len(subscribers)} subscribers")
        return subscribers

    def upsert_subscriber(self, subscriber: Subscriber) -> None:
        """Create or replace a subscriber record."""
        item = self._subscriber_to_item(subscriber)
        self._call('upsert subscriber', lambda: self.table.put_item(Item=item))
        logger.info(f"Upserted subscriber {subscriber.subscriber_id}")

    def remove_subscriber(self, subscriber_id: str) -> RemoveOutcome:
        """
        Delete a subscriber record.

        Returns:
            RemoveOutcome.OK, or NOT_FOUND if there was no such subscriber
        """
        response = self._call(
            'remove subscriber',
            lambda: self.table.delete_item(
                Key={'pk': SUBSCRIBER_PK, 'sk': subscriber_id},
                ReturnValues='ALL_OLD'
            )
        )
        if not response.get('Attributes'):
            logger.info(f"Subscriber {subscriber_id} not found")
            return RemoveOutcome.NOT_FOUND

        logger.info(f"Removed subscriber {subscriber_id}")
        return RemoveOutcome.OK

    def _item_to_subscriber(self, item: dict) -> Optional[Subscriber]:
        """
        Convert DynamoDB item to Subscriber object.

        Returns:
            Subscriber object or None if conversion fails
        """
        try:
            return Subscriber(
                subscriber_id=item['sk'],
                destination=item['destination'],
                filter=SubscriberFilter.from_dict(item.get('filter') or {})
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to convert item to Subscriber: {e}")
            return None

    def _subscriber_to_item(self, subscriber: Subscriber) -> dict:
        return {
            'pk': SUBSCRIBER_PK,
            'sk': subscriber.subscriber_id,
            'destination': subscriber.destination,
            'filter': subscriber.filter.to_dict(),
            'updated_at': int(time.time())
        }

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def _call(self, description: str, operation: Callable):
        """
        Run a store operation with bounded exponential backoff.

        Args:
            description: Operation name for log messages
            operation: Zero-argument callable performing the request

        Returns:
            The operation's return value

        Raises:
            StoreUnavailableError: If every attempt failed transiently
            ClientError: For non-transient store errors
        """
        max_attempts = self.backoff.max_attempts

        for attempt in range(max_attempts):
            try:
                return operation()
            except (ClientError, *TRANSIENT_EXCEPTIONS) as e:
                if not _is_transient(e):
                    raise
                if attempt < max_attempts - 1:
                    delay = self.backoff.delay(attempt)
                    logger.warning(
                        f"Store call '{description}' failed (attempt {attempt + 1}/{max_attempts}): {e}. "
                        f"Retrying in {delay:.2f} seconds..."
                    )
                    self.sleep(delay)
                else:
                    logger.error(
                        f"All {max_attempts} attempts of '{description}' failed. Last error: {e}"
                    )
                    raise StoreUnavailableError(f"{description}: {e}") from e


def _stored_version(item: dict):
    """Version attribute of a stored item, as int when it is numeric."""
    version = item.get('version')
    try:
        return int(version)
    except (TypeError, ValueError):
        return version


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def _is_transient(error: Exception) -> bool:
    """Throttling, server-side errors, connection failures and timeouts."""
    if isinstance(error, ClientError):
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
        return _error_code(error) in TRANSIENT_ERROR_CODES or status >= 500
    return isinstance(error, TRANSIENT_EXCEPTIONS)
