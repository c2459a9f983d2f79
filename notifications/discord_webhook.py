"""Discord webhook client used as the messaging platform."""
import logging

import requests

from notifications.models import DeliveryStatus, RenderedMessage

logger = logging.getLogger(__name__)


class DiscordWebhookMessenger:
    """Sends rendered notifications to Discord webhook URLs."""

    USERNAME = "GDQBot"

    def __init__(self, timeout: int = 30, session: requests.Session = None):
        """
        Initialize the messenger.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            session: Optional requests session to reuse connections
        """
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(
        self,
        destination: str,
        message: RenderedMessage,
        idempotency_key: str = ''
    ) -> DeliveryStatus:
        """
        Execute the webhook once.

        Args:
            destination: Webhook URL
            message: Rendered message
            idempotency_key: Job key, carried in the embed footer

        Returns:
            DeliveryStatus classifying the attempt
        """
        embed = {
            'title': message.title,
            'description': message.description,
        }
        if idempotency_key:
            embed['footer'] = {'text': idempotency_key[:16]}

        payload = {
            'username': self.USERNAME,
            'embeds': [embed],
        }

        try:
            response = self.session.post(destination, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Webhook request failed: {e}")
            return DeliveryStatus.TRANSIENT

        if 200 <= response.status_code < 300:
            return DeliveryStatus.OK

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(f"Webhook returned retryable status {response.status_code}")
            return DeliveryStatus.TRANSIENT

        # Unknown webhook or revoked token; retrying cannot help
        logger.warning(f"Webhook rejected message with status {response.status_code}")
        return DeliveryStatus.PERMANENT
