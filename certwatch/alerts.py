"""Alert data model and helpers for building enriched alerts."""

from __future__ import annotations

import asyncio
import ipaddress
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

IpAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


@dataclass
class AsnInfo:
    """Autonomous-system details for an IP address."""

    as_number: int
    as_name: str
    country_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "as_number": self.as_number,
            "as_name": self.as_name,
            "country_code": self.country_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AsnInfo:
        return cls(
            as_number=int(data["as_number"]),
            as_name=str(data["as_name"]),
            country_code=data.get("country_code"),
        )


@dataclass
class EnrichmentInfo:
    """Enrichment result for a single IP address."""

    ip: IpAddress
    asn_info: AsnInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": str(self.ip),
            "asn_info": self.asn_info.to_dict() if self.asn_info else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnrichmentInfo:
        asn = data.get("asn_info")
        return cls(
            ip=ipaddress.ip_address(data["ip"]),
            asn_info=AsnInfo.from_dict(asn) if asn is not None else None,
        )


@dataclass
class DnsInfo:
    """DNS records resolved for a domain."""

    a_records: list[IpAddress] = field(default_factory=list)
    aaaa_records: list[IpAddress] = field(default_factory=list)
    ns_records: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "a_records": [str(ip) for ip in self.a_records],
            "aaaa_records": [str(ip) for ip in self.aaaa_records],
            "ns_records": list(self.ns_records),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DnsInfo:
        return cls(
            a_records=[ipaddress.ip_address(ip) for ip in data["a_records"]],
            aaaa_records=[ipaddress.ip_address(ip) for ip in data["aaaa_records"]],
            ns_records=[str(ns) for ns in data["ns_records"]],
        )


@dataclass
class Alert:
    """A suspicious domain together with its DNS and enrichment data."""

    timestamp: str = ""
    domain: str = ""
    source_tag: list[str] = field(default_factory=list)
    resolved_after_nxdomain: bool = False
    dns: DnsInfo = field(default_factory=DnsInfo)
    enrichment: list[EnrichmentInfo] = field(default_factory=list)

    def all_ips(self) -> list[IpAddress]:
        """All resolved addresses, A records first, then AAAA records."""
        return [*self.dns.a_records, *self.dns.aaaa_records]

    def to_dict(self) -> dict[str, Any]:
        """A JSON-compatible representation of the alert."""
        return {
            "timestamp": self.timestamp,
            "domain": self.domain,
            "source_tag": list(self.source_tag),
            "resolved_after_nxdomain": self.resolved_after_nxdomain,
            "dns": self.dns.to_dict(),
            "enrichment": [e.to_dict() for e in self.enrichment],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Alert:
        """Build an alert from the representation produced by ``to_dict``."""
        try:
            return cls(
                timestamp=str(data["timestamp"]),
                domain=str(data["domain"]),
                source_tag=[str(tag) for tag in data["source_tag"]],
                resolved_after_nxdomain=bool(data["resolved_after_nxdomain"]),
                dns=DnsInfo.from_dict(data["dns"]),
                enrichment=[EnrichmentInfo.from_dict(e) for e in data["enrichment"]],
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"invalid alert data: {exc}") from exc


@dataclass
class AggregatedAlert:
    """An alert standing for itself and a number of suppressed duplicates."""

    alert: Alert
    deduplicated_count: int = 0


class EnrichmentProvider(ABC):
    """Something that can enrich an IP address with ASN data."""

    @abstractmethod
    async def enrich(self, ip: IpAddress) -> EnrichmentInfo:
        """Return enrichment data for ``ip``."""


async def build_alert(
    domain: str,
    source_tag: list[str],
    resolved_after_nxdomain: bool,
    dns_info: DnsInfo,
    enrichment_provider: EnrichmentProvider | None = None,
) -> Alert:
    """Build an alert, enriching every resolved address when a provider is given."""
    if enrichment_provider is not None:
        ips = [*dns_info.a_records, *dns_info.aaaa_records]
        enrichment = list(
            await asyncio.gather(*(enrichment_provider.enrich(ip) for ip in ips))
        )
    else:
        enrichment = []

    return Alert(
        timestamp=datetime.now(timezone.utc).isoformat(),
        domain=domain,
        source_tag=list(source_tag),
        resolved_after_nxdomain=resolved_after_nxdomain,
        dns=dns_info,
        enrichment=enrichment,
    )