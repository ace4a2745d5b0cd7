"""A background subscriber that logs every alert it receives."""

from __future__ import annotations

import asyncio
import logging

from certwatch.alerts import Alert
from certwatch.broadcast import BroadcastReceiver, ChannelClosed, Lagged

logger = logging.getLogger(__name__)


class _ShutdownRequested(Exception):
    pass


async def _next_alert(alert_rx: BroadcastReceiver[Alert], shutdown: asyncio.Event | None) -> Alert:
    if shutdown is None:
        return await alert_rx.recv()
    if shutdown.is_set():
        raise _ShutdownRequested
    recv_task = asyncio.ensure_future(alert_rx.recv())
    stop_task = asyncio.ensure_future(shutdown.wait())
    try:
        await asyncio.wait({recv_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (recv_task, stop_task):
            if not task.done():
                task.cancel()
    if stop_task.done() and not stop_task.cancelled():
        raise _ShutdownRequested
    return recv_task.result()


async def _run(
    alert_rx: BroadcastReceiver[Alert],
    shutdown: asyncio.Event | None,
    completion: asyncio.Future | None,
) -> None:
    logger.info("Logging subscriber started.")
    while True:
        try:
            alert = await _next_alert(alert_rx, shutdown)
        except _ShutdownRequested:
            logger.info("Logging subscriber received shutdown signal.")
            break
        except Lagged as exc:
            logger.warning(
                "Logging subscriber is lagging behind. Skipped %d messages.", exc.skipped
            )
            continue
        except ChannelClosed:
            logger.info("Alert channel closed. Logging subscriber shutting down.")
            break

        logger.info(
            "New alert received: domain=%s source=%s",
            alert.domain,
            ",".join(alert.source_tag),
        )
        if completion is not None:
            if not completion.done():
                completion.set_result(None)
            return
    logger.info("Logging subscriber finished.")


def spawn(
    alert_rx: BroadcastReceiver[Alert],
    shutdown: asyncio.Event | None = None,
    completion: asyncio.Future | None = None,
) -> asyncio.Task:
    """Start logging alerts from ``alert_rx`` in a background task.

    The task stops when ``shutdown`` is set or the channel closes. When
    ``completion`` is given, it is resolved after the first alert and the
    task ends.
    """
    return asyncio.create_task(_run(alert_rx, shutdown, completion))