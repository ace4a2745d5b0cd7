"""Output destinations for alerts and the manager that dispatches to them."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import sys
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import TextIO

from certwatch.alerts import Alert, AsnInfo
from certwatch.metrics import Metrics

logger = logging.getLogger(__name__)


class OutputFormat(str, enum.Enum):
    """How alerts are rendered on an output."""

    JSON = "json"
    PLAIN_TEXT = "plain_text"

    def __str__(self) -> str:
        return self.value


class Output(ABC):
    """A destination that alerts can be sent to."""

    name: str = "output"

    @abstractmethod
    async def send_alert(self, alert: Alert) -> None:
        """Deliver ``alert``; raise on failure."""


class OutputManager:
    """Sends every alert to all configured outputs."""

    def __init__(self, outputs: Iterable[Output], metrics: Metrics) -> None:
        self.outputs = list(outputs)
        self._metrics = metrics

    async def send_alert(self, alert: Alert) -> None:
        """Dispatch ``alert``; a failing output is logged and does not stop the others."""
        for output in self.outputs:
            try:
                await output.send_alert(alert)
            except Exception as exc:
                logger.error(
                    "Failed to send alert via an output: output=%s domain=%s error=%s",
                    output.name,
                    alert.domain,
                    exc,
                )
            else:
                self._metrics.increment_alerts_sent(output.name)


def _format_asn_data(data: AsnInfo) -> str:
    country = data.country_code or "??"
    return f"[{country}, {data.as_number}, {data.as_name}]"


def format_plain_text(alert: Alert) -> str:
    """A one-line summary.

    Form: ``[tag] domain -> first_ip [country, as_number, as_name] (+n other IPs) [timestamp]``
    """
    enrichment_map = {e.ip: e.asn_info for e in alert.enrichment}
    all_ips = alert.all_ips()

    first_ip = str(all_ips[0]) if all_ips else ""
    if all_ips:
        data = enrichment_map.get(all_ips[0])
        details = _format_asn_data(data) if data is not None else "[No enrichment data]"
    else:
        details = ""

    other_count = max(len(all_ips) - 1, 0)
    others = f" (+{other_count} other IPs)" if other_count > 0 else ""

    timestamp = datetime.now().astimezone().strftime("%Y-%m-%dT%H:%M:%S%z")
    tags = ", ".join(alert.source_tag)
    return f"[{tags}] {alert.domain} -> {first_ip} {details}{others} [{timestamp}]".strip()


def _json_line(alert: Alert) -> str:
    return json.dumps(alert.to_dict(), separators=(",", ":"))


class StdoutOutput(Output):
    """Prints alerts to standard output, or to a given stream."""

    name = "stdout"

    def __init__(
        self, format: OutputFormat = OutputFormat.PLAIN_TEXT, stream: TextIO | None = None
    ) -> None:
        self.format = format
        self._stream = stream
        self._lock = threading.Lock()

    def write_alert(self, alert: Alert, writer: TextIO) -> None:
        """Write ``alert`` as one line to ``writer`` in the configured format."""
        if self.format == OutputFormat.JSON:
            line = _json_line(alert)
        else:
            line = format_plain_text(alert)
        with self._lock:
            writer.write(line + "\n")
            writer.flush()

    async def send_alert(self, alert: Alert) -> None:
        stream = self._stream if self._stream is not None else sys.stdout
        await asyncio.to_thread(self.write_alert, alert, stream)


class JsonOutput(Output):
    """Appends alerts to a file, one JSON document per line."""

    name = "json_file"

    def __init__(self, file_path: str | Path) -> None:
        self.file_path = Path(file_path)
        self._lock = threading.Lock()

    def _append(self, line: str) -> None:
        with self._lock, self.file_path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    async def send_alert(self, alert: Alert) -> None:
        await asyncio.to_thread(self._append, _json_line(alert))