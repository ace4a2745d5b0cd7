"""Setup of external notification services."""

from __future__ import annotations

import asyncio
import logging

from certwatch.alerts import Alert
from certwatch.broadcast import BroadcastChannel
from certwatch.formatting import SlackTextFormatter
from certwatch.notifier import NotificationManager, SlackConfig
from certwatch.slack import SlackClient

logger = logging.getLogger(__name__)


def setup_notification_pipeline(
    slack_config: SlackConfig | None, queue_capacity: int
) -> tuple[BroadcastChannel[Alert], asyncio.Task] | None:
    """Start the Slack notifier when it is enabled and has a webhook URL.

    Returns the alert channel to publish on and the notifier task, or None
    when Slack notifications are not active. Must be called with a running
    event loop.
    """
    if slack_config is None or not slack_config.enabled:
        return None

    webhook_url = slack_config.webhook_url
    if not webhook_url:
        logger.warning(
            "Slack notifications are enabled, but no webhook URL was provided. "
            "Slack notifications will be disabled."
        )
        return None

    channel: BroadcastChannel[Alert] = BroadcastChannel(queue_capacity)
    logger.info("Slack notification pipeline enabled.")

    client = SlackClient(webhook_url, SlackTextFormatter())
    manager = NotificationManager(slack_config, channel.subscribe(), client)
    task = asyncio.get_running_loop().create_task(manager.run())
    return channel, task