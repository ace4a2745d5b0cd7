"""A client that posts alert batches to a Slack webhook."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from certwatch.alerts import AggregatedAlert
from certwatch.formatting import TextFormatter

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Sending a notification to Slack failed."""


class SlackClient:
    """Formats alert batches and posts them to a Slack incoming webhook."""

    def __init__(self, webhook_url: str, formatter: TextFormatter, timeout: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self.formatter = formatter
        self.timeout = timeout

    async def send_batch(self, alerts: Sequence[AggregatedAlert]) -> None:
        """Send ``alerts`` as one message; does nothing for an empty batch."""
        if not alerts:
            return

        logger.info("Formatting and sending batch of %d alerts to Slack.", len(alerts))
        payload = {"text": self.formatter.format_batch(alerts)}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as exc:
            logger.error("HTTP request to Slack failed: %s", exc)
            raise SlackError(f"HTTP request to Slack failed: {exc}") from exc

        if not response.is_success:
            body = response.text
            logger.error(
                "Failed to send Slack notification: status=%s body=%s",
                response.status_code,
                body,
            )
            raise SlackError(
                f"Failed to send Slack notification: status {response.status_code}, body: {body}"
            )

        logger.info("Successfully sent batch of %d alerts to Slack.", len(alerts))