"""Client for the CertStream websocket feed of certificate domains."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import ssl
from collections.abc import AsyncIterable
from typing import Any, Protocol

import websockets
from websockets.exceptions import WebSocketException

from certwatch.broadcast import ChannelClosed
from certwatch.heartbeat import run_heartbeat
from certwatch.metrics import Metrics

logger = logging.getLogger(__name__)

_INITIAL_BACKOFF = 1.0
_MAX_BACKOFF = 60.0

_CLOSED_ERRORS: tuple[type[BaseException], ...] = (ChannelClosed,)
if hasattr(asyncio, "QueueShutDown"):
    _CLOSED_ERRORS += (asyncio.QueueShutDown,)


class MessageParseError(ValueError):
    """A CertStream message was not valid domains-only JSON."""


class ChannelClosedError(Exception):
    """The downstream domain queue no longer accepts domains."""


class _DomainQueue(Protocol):
    async def put(self, item: str) -> Any: ...


def parse_message(text: str | bytes) -> list[str]:
    """Extract the domain names from a domains-only CertStream message."""
    try:
        message = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MessageParseError(f"invalid JSON: {exc}") from exc
    if not isinstance(message, dict) or "data" not in message:
        raise MessageParseError("missing field 'data'")
    data = message["data"]
    if not isinstance(data, list) or not all(isinstance(d, str) for d in data):
        raise MessageParseError("'data' must be a list of strings")
    return data


class CertStreamClient:
    """Reads CertStream messages and queues a sample of their domains."""

    def __init__(
        self,
        url: str,
        output_queue: _DomainQueue,
        sample_rate: float = 1.0,
        allow_invalid_certs: bool = False,
        metrics: Metrics | None = None,
    ) -> None:
        if not 0.0 <= sample_rate <= 1.0:
            raise ValueError("sample_rate must be between 0.0 and 1.0")
        self.url = url
        self.output_queue = output_queue
        self.sample_rate = sample_rate
        self.allow_invalid_certs = allow_invalid_certs
        self.metrics = metrics if metrics is not None else Metrics.disabled()

    def sample_domains(self, domains: list[str]) -> list[str]:
        """Keep each domain with probability ``sample_rate``."""
        if self.sample_rate >= 1.0:
            return list(domains)
        return [d for d in domains if random.random() < self.sample_rate]

    async def handle_message(self, message: str | bytes) -> None:
        """Parse a text message, sample it and queue its domains.

        Non-text messages and unparsable text are ignored. Raises
        ``ChannelClosedError`` when the queue is closed.
        """
        if not isinstance(message, str):
            return
        try:
            domains = parse_message(message)
        except MessageParseError as exc:
            logger.warning("Failed to parse certstream message: %s", exc)
            return
        if not domains:
            return

        self.metrics.domains_ingested_total.increment(len(domains))
        for domain in self.sample_domains(domains):
            try:
                await self.output_queue.put(domain)
            except _CLOSED_ERRORS as exc:
                logger.info("Domain channel closed. CertStream client shutting down.")
                raise ChannelClosedError("Domain channel closed") from exc
            self.metrics.increment_domains_queued(1.0)

    async def run_with_connection(self, connection: AsyncIterable[str | bytes]) -> None:
        """Process messages from ``connection`` until it closes; no reconnection."""
        logger.info("Starting CertStream client message processing")
        try:
            async for message in connection:
                await self.handle_message(message)
        except (WebSocketException, OSError) as exc:
            logger.error("WebSocket error: %s", exc)
            raise ConnectionError(f"WebSocket error: {exc}") from exc
        logger.info("WebSocket connection closed")

    def _connect_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"max_size": None}
        if self.url.startswith("wss://"):
            context = ssl.create_default_context()
            if self.allow_invalid_certs:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            kwargs["ssl"] = context
        return kwargs

    async def _connect_and_run(self) -> None:
        try:
            connection = websockets.connect(self.url, **self._connect_kwargs())
            ws = await connection
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            raise ConnectionError(f"Failed to connect to {self.url}: {exc}") from exc
        try:
            logger.info("Connected to %s", self.url)
            self.metrics.set_websocket_connection_status(1)
            await ws.ping()
            await self.run_with_connection(ws)
        finally:
            await ws.close()

    async def run(self, shutdown: asyncio.Event) -> None:
        """Connect and process messages, reconnecting with backoff until ``shutdown``."""
        backoff = _INITIAL_BACKOFF
        heartbeat = asyncio.create_task(run_heartbeat("CertStreamClient", shutdown))
        try:
            while True:
                if shutdown.is_set():
                    logger.info("CertStream client received shutdown signal.")
                    return
                conn_task = asyncio.ensure_future(self._connect_and_run())
                stop_task = asyncio.ensure_future(shutdown.wait())
                done, _ = await asyncio.wait(
                    {conn_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if stop_task in done:
                    conn_task.cancel()
                    await asyncio.gather(conn_task, return_exceptions=True)
                    logger.info("CertStream client received shutdown signal.")
                    return
                stop_task.cancel()

                try:
                    conn_task.result()
                except Exception as exc:
                    logger.error("Connection failed: %s", exc)
                    self.metrics.increment_websocket_disconnects()
                else:
                    logger.info("Connection closed normally")
                    backoff = _INITIAL_BACKOFF

                self.metrics.set_websocket_connection_status(0)

                try:
                    await asyncio.wait_for(shutdown.wait(), timeout=backoff)
                except asyncio.TimeoutError:
                    pass
                else:
                    logger.info(
                        "Shutdown signal received during backoff. "
                        "CertStream client shutting down."
                    )
                    return

                logger.info("Reconnecting...")
                backoff = min(backoff * 2, _MAX_BACKOFF)
        finally:
            if not heartbeat.done():
                heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)