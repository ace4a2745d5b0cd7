"""Application metrics: collection, Prometheus exposition and system gauges."""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from collections.abc import Mapping
from dataclasses import dataclass

import psutil
from aiohttp import web

logger = logging.getLogger(__name__)

_KINDS = frozenset({"counter", "gauge", "histogram"})
_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
_DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

_DESCRIPTIONS = (
    ("domains_ingested_total", "counter", "count",
     "Total number of domains received from the websocket before any sampling."),
    ("domains_processed_total", "counter", "count",
     "Total number of domains received from the input source and processed by a worker."),
    ("domains_ignored_total", "counter", "count",
     "Total number of domains that were ignored based on the ignore rules."),
    ("alerts_sent_total", "counter", "count",
     "Total number of alerts successfully sent, labeled by output."),
    ("deduplicated_alerts_total", "counter", "count",
     "Total number of alerts that were suppressed by the deduplication filter."),
    ("active_workers", "gauge", "count",
     "The current number of worker tasks actively processing domains."),
    ("domains_queued", "gauge", "count",
     "The current number of domains in the queue awaiting processing."),
    ("in_flight_requests", "gauge", "count",
     "The number of domains currently being processed across all workers."),
    ("rule_matches_total", "counter", "count",
     "The total number of times each rule has matched a domain."),
    ("rules_loaded_count", "gauge", "count",
     "The current number of rules loaded into the rule engine."),
    ("dns_queries_total", "counter", "count",
     "Total number of DNS queries performed, labeled by their outcome."),
    ("dns_resolution_duration_seconds", "histogram", "seconds",
     "A histogram of the latency for DNS resolutions."),
    ("dns_resolver_health_status", "gauge", "count",
     "Health status of each configured DNS resolver (1 for healthy, 0 for unhealthy)."),
    ("process_cpu_usage_percent", "gauge", "percent",
     "The percentage of CPU time the `certwatch` process is currently using."),
    ("process_memory_usage_bytes", "gauge", "bytes",
     "The amount of physical memory (resident set size) the `certwatch` process is using, in bytes."),
    ("websocket_connection_status", "gauge", "count",
     "The status of the websocket connection (1 for connected, 0 for disconnected)."),
    ("websocket_disconnects_total", "counter", "count",
     "Total number of times the websocket has disconnected."),
)


def _format_value(value: float) -> str:
    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _label_text(labels: tuple[tuple[str, str], ...]) -> str:
    if not labels:
        return ""
    inner = ",".join(f'{key}="{_escape_label(value)}"' for key, value in labels)
    return "{" + inner + "}"


class Counter:
    """A monotonically increasing count."""

    def __init__(self) -> None:
        self._value: float = 0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def increment(self, amount: float = 1) -> None:
        """Add ``amount``, which must not be negative."""
        if amount < 0:
            raise ValueError("counters can only be incremented by non-negative amounts")
        with self._lock:
            self._value += amount


class Gauge:
    """A value that can go up and down."""

    def __init__(self) -> None:
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def increment(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount


class Histogram:
    """A distribution of observed values over fixed buckets."""

    def __init__(self, buckets: tuple[float, ...] = _DEFAULT_BUCKETS) -> None:
        self.buckets = tuple(sorted(buckets))
        self._counts = [0] * len(self.buckets)
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        return self._count

    @property
    def sum(self) -> float:
        return self._sum

    def record(self, value: float) -> None:
        with self._lock:
            self._sum += value
            self._count += 1
            for position, bound in enumerate(self.buckets):
                if value <= bound:
                    self._counts[position] += 1
                    break

    def _snapshot(self) -> tuple[list[tuple[float, int]], float, int]:
        with self._lock:
            cumulative = []
            running = 0
            for bound, count in zip(self.buckets, self._counts):
                running += count
                cumulative.append((bound, running))
            return cumulative, self._sum, self._count


_FACTORIES = {"counter": Counter, "gauge": Gauge, "histogram": Histogram}


class MetricsRegistry:
    """Holds every metric series and renders them in Prometheus text format."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._descriptions: dict[str, tuple[str, str, str]] = {}
        self._kinds: dict[str, str] = {}
        self._series: dict[tuple[str, tuple[tuple[str, str], ...]], object] = {}

    def describe(self, name: str, kind: str, unit: str, description: str) -> None:
        """Attach a kind, unit and help text to a metric name."""
        if kind not in _KINDS:
            raise ValueError(f"unknown metric kind: {kind}")
        with self._lock:
            self._descriptions[name] = (kind, unit, description)

    def _get(self, name: str, labels: Mapping[str, str] | None, kind: str):
        key = (name, tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items())))
        with self._lock:
            known = self._kinds.get(name)
            if known is not None and known != kind:
                raise ValueError(f"metric {name!r} is already registered as a {known}")
            metric = self._series.get(key)
            if metric is None:
                metric = _FACTORIES[kind]()
                self._series[key] = metric
                self._kinds[name] = kind
            return metric

    def counter(self, name: str, labels: Mapping[str, str] | None = None) -> Counter:
        return self._get(name, labels, "counter")

    def gauge(self, name: str, labels: Mapping[str, str] | None = None) -> Gauge:
        return self._get(name, labels, "gauge")

    def histogram(self, name: str, labels: Mapping[str, str] | None = None) -> Histogram:
        return self._get(name, labels, "histogram")

    def render(self) -> str:
        """All series in the Prometheus text exposition format."""
        with self._lock:
            series = sorted(self._series.items())
            kinds = dict(self._kinds)
            descriptions = dict(self._descriptions)

        lines: list[str] = []
        current = None
        for (name, labels), metric in series:
            if name != current:
                current = name
                description = descriptions.get(name)
                if description is not None:
                    lines.append(f"# HELP {name} {_escape_help(description[2])}")
                lines.append(f"# TYPE {name} {kinds[name]}")
            if isinstance(metric, Histogram):
                buckets, total, count = metric._snapshot()
                for bound, cumulative in buckets:
                    bucket_labels = labels + (("le", _format_value(float(bound))),)
                    lines.append(f"{name}_bucket{_label_text(bucket_labels)} {cumulative}")
                inf_labels = labels + (("le", "+Inf"),)
                lines.append(f"{name}_bucket{_label_text(inf_labels)} {count}")
                lines.append(f"{name}_sum{_label_text(labels)} {_format_value(total)}")
                lines.append(f"{name}_count{_label_text(labels)} {count}")
            else:
                lines.append(f"{name}{_label_text(labels)} {_format_value(metric.value)}")
        return "\n".join(lines) + "\n" if lines else ""


class Metrics:
    """High-level handle used by the application to update known metrics."""

    def __init__(self, registry: MetricsRegistry | None = None) -> None:
        self.registry = registry if registry is not None else MetricsRegistry()
        self.enabled = True
        for name, kind, unit, description in _DESCRIPTIONS:
            self.registry.describe(name, kind, unit, description)
        self.domains_ingested_total = self.registry.counter("domains_ingested_total")
        self.domains_processed_total = self.registry.counter("domains_processed_total")
        self.domains_ignored_total = self.registry.counter("domains_ignored_total")
        self.deduplicated_alerts_total = self.registry.counter("deduplicated_alerts_total")

    @classmethod
    def disabled(cls) -> Metrics:
        """A handle whose updates go to a private registry nobody exports."""
        metrics = cls(MetricsRegistry())
        metrics.enabled = False
        return metrics

    def increment_rule_match(self, rule_name: str) -> None:
        self.registry.counter("rule_matches_total", {"rule": rule_name}).increment(1)

    def set_rules_loaded_count(self, count: int) -> None:
        self.registry.gauge("rules_loaded_count").set(count)

    def set_websocket_connection_status(self, status: int) -> None:
        self.registry.gauge("websocket_connection_status").set(status)

    def increment_websocket_disconnects(self) -> None:
        self.registry.counter("websocket_disconnects_total").increment(1)

    def increment_dns_query(self, status: str) -> None:
        self.registry.counter("dns_queries_total", {"status": status}).increment(1)

    def increment_alerts_sent(self, output_name: str) -> None:
        self.registry.counter("alerts_sent_total", {"output_name": output_name}).increment(1)

    def increment_domains_queued(self, amount: float = 1.0) -> None:
        self.registry.gauge("domains_queued").increment(amount)


@dataclass
class MetricsConfig:
    """Settings for the metrics endpoint."""

    enabled: bool = False
    listen_address: str = "127.0.0.1:9090"
    system_metrics_enabled: bool = False


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port_text = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"invalid listen address: {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ValueError(f"invalid port in listen address: {address!r}") from exc
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range in listen address: {address!r}")
    return host, port


class MetricsServer:
    """HTTP server exposing ``/metrics`` for a Prometheus scraper."""

    def __init__(self, registry: MetricsRegistry, host: str = "127.0.0.1", port: int = 9090) -> None:
        self.registry = registry
        self.host = host
        self.port = port
        self.address: tuple[str, int] | None = None
        self.task: asyncio.Task | None = None
        self._runner: web.AppRunner | None = None

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        return web.Response(
            body=self.registry.render().encode("utf-8"),
            headers={"Content-Type": _CONTENT_TYPE},
        )

    async def start(self) -> tuple[str, int]:
        """Bind and start serving; returns the bound host and port."""
        if self._runner is not None and self.address is not None:
            return self.address
        app = web.Application()
        app.router.add_get("/metrics", self._handle_metrics)
        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except BaseException:
            await runner.cleanup()
            raise
        self._runner = runner
        bound = runner.addresses[0]
        self.address = (bound[0], bound[1])
        return self.address

    async def serve_until(self, shutdown: asyncio.Event) -> None:
        """Serve until ``shutdown`` is set, then stop cleanly."""
        await self.start()
        try:
            await shutdown.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self._runner is None:
            return
        runner, self._runner = self._runner, None
        await runner.cleanup()


class SystemCollector:
    """Periodically records CPU and resident memory of this process."""

    def __init__(self, registry: MetricsRegistry, interval: float = 10.0) -> None:
        self.interval = interval
        self._cpu = registry.gauge("process_cpu_usage_percent")
        self._memory = registry.gauge("process_memory_usage_bytes")
        self._process = psutil.Process()

    def collect_once(self) -> bool:
        """Update the gauges; False when the process can no longer be found."""
        try:
            with self._process.oneshot():
                cpu = self._process.cpu_percent(interval=None)
                rss = self._process.memory_info().rss
        except psutil.NoSuchProcess:
            logger.error(
                "SystemCollector: monitored process with PID %s no longer found. "
                "Collector is shutting down.",
                self._process.pid,
            )
            return False
        self._cpu.set(cpu)
        self._memory.set(rss)
        return True

    async def run(self, shutdown: asyncio.Event) -> None:
        while not shutdown.is_set():
            if not self.collect_once():
                return
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue


class MetricsBuilder:
    """Sets up the registry, the HTTP endpoint and optional system collection."""

    def __init__(self, config: MetricsConfig) -> None:
        self.config = config
        self.system_task: asyncio.Task | None = None

    async def build(
        self, shutdown: asyncio.Event
    ) -> tuple[Metrics, tuple[MetricsServer, tuple[str, int]] | None]:
        """Return the metrics handle and, when enabled, the running server and its address."""
        if not self.config.enabled:
            return Metrics.disabled(), None

        try:
            host, port = _split_address(self.config.listen_address)
        except ValueError as exc:
            logger.error("Failed to bind metrics server to %s: %s", self.config.listen_address, exc)
            return Metrics.disabled(), None

        registry = MetricsRegistry()
        server = MetricsServer(registry, host, port)
        try:
            address = await server.start()
        except OSError as exc:
            logger.error("Failed to bind metrics server to %s: %s", self.config.listen_address, exc)
            return Metrics.disabled(), None

        metrics = Metrics(registry)
        server.task = asyncio.create_task(server.serve_until(shutdown))
        if self.config.system_metrics_enabled:
            self.system_task = asyncio.create_task(SystemCollector(registry).run(shutdown))
        return metrics, (server, address)