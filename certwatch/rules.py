"""Staged, rule-based filtering of alerts.

Rules are loaded from YAML files. Each rule carries a boolean expression
tree; rules that only need the domain name run before enrichment, the
others after DNS and ASN data are available.
"""

from __future__ import annotations

import enum
import ipaddress
import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

import yaml

from certwatch.alerts import Alert
from certwatch.metrics import Metrics

logger = logging.getLogger(__name__)

_MAX_ASN = 2**32 - 1

IpNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class RuleError(Exception):
    """A rule, pattern or rule file could not be loaded."""


class EnrichmentLevel(enum.IntEnum):
    """How much enrichment a rule needs before it can be evaluated."""

    NONE = 0
    STANDARD = 1


@dataclass
class AllExpr:
    """True when every sub-expression is true."""

    expressions: list[Expression] = field(default_factory=list)

    def matches(self, alert: Alert) -> bool:
        return all(expr.matches(alert) for expr in self.expressions)

    def required_level(self) -> EnrichmentLevel:
        return max(
            (expr.required_level() for expr in self.expressions),
            default=EnrichmentLevel.NONE,
        )


@dataclass
class AnyExpr:
    """True when at least one sub-expression is true."""

    expressions: list[Expression] = field(default_factory=list)

    def matches(self, alert: Alert) -> bool:
        return any(expr.matches(alert) for expr in self.expressions)

    def required_level(self) -> EnrichmentLevel:
        return max(
            (expr.required_level() for expr in self.expressions),
            default=EnrichmentLevel.NONE,
        )


@dataclass
class DomainRegex:
    """True when the pattern is found in the alert's domain."""

    pattern: str
    _regex: re.Pattern[str] | None = field(
        init=False, default=None, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        try:
            self._regex = re.compile(self.pattern)
        except re.error as exc:
            logger.warning("Invalid domain regex %r: %s", self.pattern, exc)
            self._regex = None

    def matches(self, alert: Alert) -> bool:
        return self._regex is not None and self._regex.search(alert.domain) is not None

    def required_level(self) -> EnrichmentLevel:
        return EnrichmentLevel.NONE


def _asn_numbers(alert: Alert) -> list[int]:
    return [e.asn_info.as_number for e in alert.enrichment if e.asn_info is not None]


def _any_ip_in(networks: Sequence[IpNetwork], alert: Alert) -> bool:
    ips = alert.all_ips()
    return any(ip in net for net in networks for ip in ips)


@dataclass
class Asns:
    """True when any enriched address belongs to one of the ASNs."""

    asns: list[int] = field(default_factory=list)

    def matches(self, alert: Alert) -> bool:
        return any(number in self.asns for number in _asn_numbers(alert))

    def required_level(self) -> EnrichmentLevel:
        return EnrichmentLevel.STANDARD


@dataclass
class NotAsns:
    """True when there is ASN data and none of it is in the listed ASNs."""

    asns: list[int] = field(default_factory=list)

    def matches(self, alert: Alert) -> bool:
        numbers = _asn_numbers(alert)
        if not numbers:
            return False
        return not any(number in self.asns for number in numbers)

    def required_level(self) -> EnrichmentLevel:
        return EnrichmentLevel.STANDARD


@dataclass
class IpNetworks:
    """True when any resolved address lies in one of the networks."""

    networks: list[IpNetwork] = field(default_factory=list)

    def matches(self, alert: Alert) -> bool:
        return _any_ip_in(self.networks, alert)

    def required_level(self) -> EnrichmentLevel:
        return EnrichmentLevel.STANDARD


@dataclass
class NotIpNetworks:
    """True when there are resolved addresses and none lies in the networks."""

    networks: list[IpNetwork] = field(default_factory=list)

    def matches(self, alert: Alert) -> bool:
        if not alert.all_ips():
            return False
        return not _any_ip_in(self.networks, alert)

    def required_level(self) -> EnrichmentLevel:
        return EnrichmentLevel.STANDARD


Expression = Union[AllExpr, AnyExpr, DomainRegex, Asns, IpNetworks, NotAsns, NotIpNetworks]


def _parse_list(kind: str, value: Any) -> list[Any]:
    if not isinstance(value, list):
        raise RuleError(f"'{kind}' expects a list")
    return value


def _parse_asns(kind: str, value: Any) -> list[int]:
    asns = []
    for item in _parse_list(kind, value):
        if isinstance(item, bool) or not isinstance(item, int) or not 0 <= item <= _MAX_ASN:
            raise RuleError(f"'{kind}' expects unsigned 32-bit integers, got {item!r}")
        asns.append(item)
    return asns


def _parse_networks(kind: str, value: Any) -> list[IpNetwork]:
    networks = []
    for item in _parse_list(kind, value):
        if not isinstance(item, str):
            raise RuleError(f"'{kind}' expects network strings, got {item!r}")
        try:
            networks.append(ipaddress.ip_network(item, strict=False))
        except ValueError as exc:
            raise RuleError(f"invalid network {item!r}: {exc}") from exc
    return networks


def parse_expression(data: Any) -> Expression:
    """Build an expression tree from a mapping with exactly one variant key."""
    if not isinstance(data, Mapping) or len(data) != 1:
        raise RuleError("an expression must be a mapping with exactly one key")
    ((kind, value),) = data.items()
    if kind in ("all", "any"):
        children = [parse_expression(item) for item in _parse_list(kind, value)]
        return AllExpr(children) if kind == "all" else AnyExpr(children)
    if kind == "domain_regex":
        if not isinstance(value, str):
            raise RuleError("'domain_regex' expects a string")
        return DomainRegex(value)
    if kind == "asns":
        return Asns(_parse_asns(kind, value))
    if kind == "not_asns":
        return NotAsns(_parse_asns(kind, value))
    if kind == "ip_networks":
        return IpNetworks(_parse_networks(kind, value))
    if kind == "not_ip_networks":
        return NotIpNetworks(_parse_networks(kind, value))
    raise RuleError(f"unknown expression type: {kind!r}")


@dataclass
class Rule:
    """A named rule with its expression and the enrichment it needs."""

    name: str
    expression: Expression
    required_level: EnrichmentLevel | None = None

    def __post_init__(self) -> None:
        if self.required_level is None:
            self.required_level = self.expression.required_level()

    def is_match(self, alert: Alert) -> bool:
        return self.expression.matches(alert)


@dataclass
class RuleSet:
    """All loaded rules, ignore patterns and per-file rule counts."""

    file_stats: dict[Path, int] = field(default_factory=dict)
    rules: list[Rule] = field(default_factory=list)
    ignore_patterns: list[str] = field(default_factory=list)


class PreFilter:
    """Discards domains that match any of a global list of ignore patterns."""

    def __init__(self, patterns: Iterable[str] | None = None) -> None:
        compiled = []
        for pattern in patterns or ():
            try:
                compiled.append(re.compile(pattern))
            except re.error as exc:
                raise RuleError(f"invalid ignore pattern {pattern!r}: {exc}") from exc
        self._patterns = compiled

    def is_match(self, domain: str) -> bool:
        matched = any(p.search(domain) for p in self._patterns)
        if matched:
            logger.debug("Domain matched ignore list: %s", domain)
        return matched


class RuleMatcher:
    """Evaluates alerts against rules split into pre- and post-enrichment stages."""

    def __init__(self, rule_set: RuleSet, metrics: Metrics) -> None:
        self.stage_1_rules = [
            r for r in rule_set.rules if r.required_level != EnrichmentLevel.STANDARD
        ]
        self.stage_2_rules = [
            r for r in rule_set.rules if r.required_level == EnrichmentLevel.STANDARD
        ]
        self._pre_filter = PreFilter(rule_set.ignore_patterns)
        self._metrics = metrics

    @classmethod
    def from_rules(cls, rules: Iterable[Rule], metrics: Metrics) -> RuleMatcher:
        """A matcher over ``rules`` with no ignore patterns."""
        return cls(RuleSet(rules=list(rules)), metrics)

    def is_ignored(self, domain: str) -> bool:
        return self._pre_filter.is_match(domain)

    def matches(self, alert: Alert, level: EnrichmentLevel) -> list[str]:
        """Names of the rules of the given stage that match ``alert``."""
        rules = self.stage_2_rules if level == EnrichmentLevel.STANDARD else self.stage_1_rules
        matched = []
        for rule in rules:
            if rule.is_match(alert):
                self._metrics.increment_rule_match(rule.name)
                matched.append(rule.name)
        return matched


def _parse_rules_file(document: Any) -> tuple[list[str], list[Rule]]:
    if document is None:
        document = {}
    if not isinstance(document, Mapping):
        raise RuleError("the top level must be a mapping")

    ignore = document.get("ignore")
    if ignore is None:
        ignore = []
    if not isinstance(ignore, list) or not all(isinstance(p, str) for p in ignore):
        raise RuleError("'ignore' must be a list of strings")

    entries = document.get("rules")
    if entries is None:
        entries = []
    if not isinstance(entries, list):
        raise RuleError("'rules' must be a list")

    rules = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            raise RuleError("each rule must be a mapping")
        name = entry.get("name")
        if not isinstance(name, str):
            raise RuleError("each rule needs a string 'name'")
        expression = parse_expression({k: v for k, v in entry.items() if k != "name"})
        rules.append(Rule(name, expression))
    return ignore, rules


def load_rules(rule_files: Iterable[str | Path] | None) -> RuleSet:
    """Load and merge the rules of every file, in order."""
    rule_set = RuleSet()
    paths = [Path(p) for p in rule_files or ()]
    if not paths:
        logger.warning("No rule files configured. No rules will be loaded.")
        return rule_set

    for path in paths:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise RuleError(f"Failed to read rule file: {path}") from exc
        try:
            ignore, rules = _parse_rules_file(yaml.safe_load(text))
        except (yaml.YAMLError, RuleError) as exc:
            raise RuleError(f"Failed to parse YAML from rule file: {path}: {exc}") from exc

        logger.info("Loaded rule file %s with %d rules.", path, len(rules))
        rule_set.file_stats[path] = len(rules)
        rule_set.ignore_patterns.extend(ignore)
        rule_set.rules.extend(rules)

    logger.info(
        "Finished loading all rule files: %d rules from %d files.",
        sum(rule_set.file_stats.values()),
        len(rule_set.file_stats),
    )
    return rule_set