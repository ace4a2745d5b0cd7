"""Periodic liveness logging for background tasks."""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


async def run_heartbeat(task_name: str, shutdown: asyncio.Event, interval: float = 3.0) -> int:
    """Log a heartbeat every ``interval`` seconds until ``shutdown`` is set.

    A heartbeat still logged after shutdown points at a task that ignores the
    shutdown signal. Returns the number of heartbeats logged.
    """
    logger.debug("Heartbeat started.", extra={"task_name": task_name})
    beats = 0
    while not shutdown.is_set():
        logger.debug("Heartbeat is alive: %s", task_name)
        beats += 1
        try:
            await asyncio.wait_for(shutdown.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
    logger.debug("Heartbeat received shutdown. Exiting: %s", task_name)
    return beats