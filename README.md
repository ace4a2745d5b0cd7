# certwatch

certwatch is an asyncio library for watching certificate transparency feeds
and flagging domains that look suspicious. It reads domain names from a
CertStream "domains-only" websocket feed, checks them against YAML rules,
and sends matching alerts to standard output, to a JSON-lines file and to
Slack. It can also expose Prometheus metrics.

## Installation

```
pip install .
```

To run the tests as well:

```
pip install ".[test]"
pytest
```

## Modules

- `certwatch.network`
  - `parse_message(text)` returns the `data` list of a feed message. It raises
    `MessageParseError` if the message is not valid JSON or has no list of
    strings under `data`.
  - `CertStreamClient(url, output_queue, sample_rate, allow_invalid_certs, metrics)`
    keeps each domain with probability `sample_rate`, which must be between
    0.0 and 1.0. It puts the kept domains on `output_queue`, which can be any
    object with an async `put`, such as an `asyncio.Queue`.
  - `run(shutdown)` connects and processes messages. After a dropped
    connection it reconnects, doubling the wait each time from 1 up to 60
    seconds, and stops when the `asyncio.Event` is set.
  - `run_with_connection(connection)` processes any async iterable of
    messages without reconnecting.
  - If the queue is closed, `ChannelClosedError` is raised.
- `certwatch.rules`
  - `load_rules(paths)` reads YAML rule files into a `RuleSet`. It raises
    `RuleError` on unreadable or malformed files.
  - Each file may hold an `ignore` list of regular expressions and a `rules`
    list. Each rule has a `name` and one expression: `all`, `any`,
    `domain_regex`, `asns`, `not_asns`, `ip_networks` or `not_ip_networks`.
    `parse_expression` builds the same trees from mappings.
  - `RuleMatcher(rule_set, metrics)` splits rules into two stages. Stage 1
    needs only the domain name (`EnrichmentLevel.NONE`). Stage 2 needs DNS
    and ASN data (`EnrichmentLevel.STANDARD`).
  - `matches(alert, level)` returns the names of the matching rules.
    `is_ignored(domain)` applies the ignore patterns.
- `certwatch.alerts` holds the data model: `Alert`, `DnsInfo`,
  `EnrichmentInfo`, `AsnInfo` and `AggregatedAlert`. `Alert.to_dict` and
  `Alert.from_dict` convert alerts to and from JSON-ready dictionaries.
  `build_alert` stamps an alert with the current UTC time. When an
  `EnrichmentProvider` is given, it also enriches every resolved address.
- `certwatch.outputs`
  - `OutputManager` sends each alert to every `Output`. A failure is logged
    and does not stop the other outputs.
  - `StdoutOutput` writes one line per alert: either plain text, made by
    `format_plain_text`, or compact JSON.
  - `JsonOutput` appends one JSON document per line to a file.
- `certwatch.broadcast.BroadcastChannel` is a bounded channel that delivers
  every item to every receiver. A receiver that falls behind gets `Lagged`.
  Once the channel is closed and drained, a receiver gets `ChannelClosed`.
- `certwatch.notifier.NotificationManager` batches alerts from a broadcast
  receiver, keyed by registrable domain; repeats only raise
  `deduplicated_count`.
  - A batch is sent when it reaches `batch_size` (default 50) or when
    `batch_timeout_seconds` (default 300) pass. What is left is sent when the
    channel closes.
- `certwatch.slack.SlackClient` posts a batch to a webhook as `{"text": ...}`.
  On a transport error or a non-2xx status it raises `SlackError`.
- `certwatch.formatting.SlackTextFormatter` sorts alerts by registrable
  domain, then by domain, then by AS name. Each line links to urlscan, Shodan
  and VirusTotal. `registrable_domain` uses a small built-in list of
  multi-label suffixes rather than the full public suffix list.
- `certwatch.services.setup_notification_pipeline(slack_config, queue_capacity)`
  starts a Slack notifier task when Slack is enabled and has a webhook URL.
  It returns the channel to publish on and the task.
- `certwatch.logging_subscriber.spawn` starts a task that logs each alert it
  receives.
- `certwatch.metrics`
  - `MetricsRegistry` holds counters, gauges and histograms and renders them
    in Prometheus text format.
  - `Metrics` is the handle the rest of the package uses to update them.
  - `MetricsServer` serves `/metrics` over aiohttp.
  - `SystemCollector` records this process's CPU and resident memory.
  - `MetricsBuilder(MetricsConfig(...)).build(shutdown)` wires these
    together.
- `certwatch.heartbeat.run_heartbeat` logs at debug level at a fixed
  interval until shutdown. It helps find tasks that ignore shutdown.

## Example

```python
import asyncio

from certwatch.alerts import Alert
from certwatch.broadcast import BroadcastChannel
from certwatch.formatting import SlackTextFormatter
from certwatch.notifier import NotificationManager, SlackConfig
from certwatch.slack import SlackClient


async def main():
    channel = BroadcastChannel(1000)
    config = SlackConfig(
        enabled=True,
        webhook_url="https://hooks.example.com/webhook",
        batch_size=50,
        batch_timeout_seconds=300,
    )
    client = SlackClient(config.webhook_url, SlackTextFormatter())
    manager = NotificationManager(config, channel.subscribe(), client)
    task = asyncio.create_task(manager.run())

    channel.send(Alert(domain="login.example.com", source_tag=["phishing"]))
    channel.close()  # the remaining batch is sent before run() returns
    await task


asyncio.run(main())
```

## What it does not do

certwatch is a library. It does not include:

- a command-line program;
- configuration file or environment loading;
- DNS resolution;
- an enrichment data source. `EnrichmentProvider` is an abstract class that
  you implement.

Connecting the feed, the rules, your own resolver and the outputs into a
running monitor is left to the caller.