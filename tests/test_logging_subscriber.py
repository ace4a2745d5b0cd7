import asyncio
import logging

import pytest

from certwatch.alerts import Alert, DnsInfo
from certwatch.broadcast import BroadcastChannel
from certwatch.logging_subscriber import spawn

LOGGER = "certwatch.logging_subscriber"


def _alert(domain: str) -> Alert:
    return Alert(
        timestamp="2025-07-08T18:00:00Z",
        domain=domain,
        source_tag=["test-source"],
        resolved_after_nxdomain=False,
        dns=DnsInfo(),
        enrichment=[],
    )


@pytest.mark.asyncio
async def test_logging_subscriber_receives_and_logs_alert(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER)
    channel = BroadcastChannel(10)
    completion = asyncio.get_running_loop().create_future()
    task = spawn(channel.subscribe(), None, completion)

    channel.send(_alert("test.com"))

    await asyncio.wait_for(completion, 1)
    await asyncio.wait_for(task, 1)
    assert completion.result() is None
    assert "domain=test.com source=test-source" in caplog.text


@pytest.mark.asyncio
async def test_shutdown_stops_subscriber(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER)
    channel = BroadcastChannel(10)
    shutdown = asyncio.Event()
    task = spawn(channel.subscribe(), shutdown)
    await asyncio.sleep(0.01)
    shutdown.set()
    await asyncio.wait_for(task, 1)
    assert "received shutdown signal" in caplog.text
    assert "Logging subscriber finished." in caplog.text


@pytest.mark.asyncio
async def test_closed_channel_stops_subscriber(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER)
    channel = BroadcastChannel(10)
    task = spawn(channel.subscribe())
    channel.send(_alert("closing.com"))
    channel.close()
    await asyncio.wait_for(task, 1)
    assert "domain=closing.com" in caplog.text
    assert "Alert channel closed" in caplog.text


@pytest.mark.asyncio
async def test_lagging_subscriber_reports_and_continues(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER)
    channel = BroadcastChannel(1)
    receiver = channel.subscribe()
    channel.send(_alert("one.com"))
    channel.send(_alert("two.com"))
    channel.send(_alert("three.com"))
    shutdown = asyncio.Event()
    completion = asyncio.get_running_loop().create_future()
    task = spawn(receiver, shutdown, completion)
    await asyncio.wait_for(completion, 1)
    await asyncio.wait_for(task, 1)
    assert "Skipped 2 messages" in caplog.text
    assert "domain=three.com" in caplog.text
    assert "domain=one.com" not in caplog.text