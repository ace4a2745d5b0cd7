"""Batches alerts per registrable domain and sends them to Slack."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from certwatch.alerts import AggregatedAlert, Alert
from certwatch.broadcast import BroadcastReceiver, ChannelClosed, Lagged
from certwatch.formatting import registrable_domain

logger = logging.getLogger(__name__)

_DEFAULT_BATCH_SIZE = 50
_DEFAULT_BATCH_TIMEOUT = 300


@dataclass
class SlackConfig:
    """Settings for Slack notifications."""

    enabled: bool | None = None
    webhook_url: str | None = None
    batch_size: int | None = None
    batch_timeout_seconds: float | None = None


class NotificationManager:
    """Collects alerts into batches and sends them when full or when the timer expires."""

    def __init__(
        self,
        slack_config: SlackConfig,
        alert_rx: BroadcastReceiver[Alert],
        slack_client: Any,
    ) -> None:
        self.config = slack_config
        self._alert_rx = alert_rx
        self._slack_client = slack_client

    async def _send_batch(self, batch: dict[str, AggregatedAlert]) -> None:
        if not batch:
            return
        alerts = list(batch.values())
        batch.clear()
        try:
            await self._slack_client.send_batch(alerts)
        except Exception as exc:
            logger.error("Failed to send Slack notification batch: %s", exc)

    async def run(self) -> None:
        """Process alerts until the channel closes, flushing what is left at the end."""
        logger.info("NotificationManager started.")
        batch_size = self.config.batch_size or _DEFAULT_BATCH_SIZE
        timeout = (
            self.config.batch_timeout_seconds
            if self.config.batch_timeout_seconds is not None
            else _DEFAULT_BATCH_TIMEOUT
        )
        loop = asyncio.get_running_loop()
        batch: dict[str, AggregatedAlert] = {}
        deadline = loop.time()
        recv_task: asyncio.Task | None = None

        try:
            while True:
                now = loop.time()
                if now >= deadline:
                    if batch:
                        logger.info(
                            "Batch timer expired, sending %d aggregated alerts to Slack.",
                            len(batch),
                        )
                        await self._send_batch(batch)
                    deadline = loop.time() + timeout
                    continue

                if recv_task is None:
                    recv_task = asyncio.ensure_future(self._alert_rx.recv())
                done, _ = await asyncio.wait({recv_task}, timeout=deadline - now)
                if not done:
                    continue
                task, recv_task = recv_task, None

                try:
                    alert = task.result()
                except Lagged as exc:
                    logger.error("NotificationManager lagged, dropping %d alerts.", exc.skipped)
                    continue
                except ChannelClosed:
                    logger.info("Alert channel closed. Shutting down NotificationManager.")
                    if batch:
                        logger.info(
                            "Sending final batch of %d aggregated alerts before shutdown.",
                            len(batch),
                        )
                        await self._send_batch(batch)
                    break

                key = registrable_domain(alert.domain) or alert.domain
                existing = batch.get(key)
                if existing is not None:
                    existing.deduplicated_count += 1
                    logger.debug("Aggregated subdomain: %s", alert.domain)
                else:
                    batch[key] = AggregatedAlert(alert=alert, deduplicated_count=0)

                if len(batch) >= batch_size:
                    logger.info(
                        "Batch size limit reached, sending %d aggregated alerts to Slack.",
                        len(batch),
                    )
                    await self._send_batch(batch)
                    deadline = loop.time() + timeout
        finally:
            if recv_task is not None and not recv_task.done():
                recv_task.cancel()
        logger.info("NotificationManager finished.")