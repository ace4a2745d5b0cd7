import ipaddress
import json
from datetime import datetime

import pytest

from certwatch.alerts import (
    AggregatedAlert,
    Alert,
    AsnInfo,
    DnsInfo,
    EnrichmentInfo,
    EnrichmentProvider,
    build_alert,
)


def ip(text):
    return ipaddress.ip_address(text)


def sample_alert():
    return Alert(
        timestamp="2025-07-05T22:25:00Z",
        domain="example.com",
        source_tag=["test-source"],
        resolved_after_nxdomain=False,
        dns=DnsInfo(
            a_records=[ip("1.1.1.1"), ip("2.2.2.2")],
            aaaa_records=[ip("2606:4700:4700::1111")],
            ns_records=["ns1.example.com"],
        ),
        enrichment=[
            EnrichmentInfo(
                ip=ip("1.1.1.1"),
                asn_info=AsnInfo(13335, "CLOUDFLARENET", "US"),
            ),
            EnrichmentInfo(ip=ip("2.2.2.2"), asn_info=None),
        ],
    )


class FakeProvider(EnrichmentProvider):
    def __init__(self):
        self.seen = []

    async def enrich(self, address):
        self.seen.append(address)
        return EnrichmentInfo(ip=address, asn_info=AsnInfo(13335, "CLOUDFLARENET", "US"))


class FailingProvider(EnrichmentProvider):
    async def enrich(self, address):
        raise RuntimeError("lookup failed")


def test_all_ips_puts_a_records_first():
    alert = sample_alert()
    assert alert.all_ips() == [
        ip("1.1.1.1"),
        ip("2.2.2.2"),
        ip("2606:4700:4700::1111"),
    ]


def test_default_alert_is_empty():
    alert = Alert()
    assert alert.domain == ""
    assert alert.all_ips() == []
    assert alert.enrichment == []


def test_dict_round_trip_through_json():
    alert = sample_alert()
    restored = Alert.from_dict(json.loads(json.dumps(alert.to_dict())))
    assert restored == alert


def test_to_dict_writes_addresses_as_strings():
    data = sample_alert().to_dict()
    assert data["dns"]["a_records"] == ["1.1.1.1", "2.2.2.2"]
    assert data["enrichment"][1]["asn_info"] is None


def test_from_dict_rejects_missing_fields():
    with pytest.raises(ValueError):
        Alert.from_dict({"domain": "example.com"})


def test_aggregated_alert_defaults_to_no_duplicates():
    aggregated = AggregatedAlert(alert=sample_alert())
    assert aggregated.deduplicated_count == 0


@pytest.mark.asyncio
async def test_build_alert_enriches_every_address_in_order():
    dns = DnsInfo(
        a_records=[ip("1.1.1.1"), ip("8.8.8.8")],
        aaaa_records=[ip("2606:4700:4700::1111")],
    )
    provider = FakeProvider()
    alert = await build_alert("example.com", ["phishing"], True, dns, provider)
    assert [e.ip for e in alert.enrichment] == dns.a_records + dns.aaaa_records
    assert provider.seen == dns.a_records + dns.aaaa_records
    assert alert.domain == "example.com"
    assert alert.source_tag == ["phishing"]
    assert alert.resolved_after_nxdomain is True
    assert alert.dns is dns


@pytest.mark.asyncio
async def test_build_alert_without_provider_has_no_enrichment():
    dns = DnsInfo(a_records=[ip("1.1.1.1")])
    alert = await build_alert("example.com", ["tag"], False, dns, None)
    assert alert.enrichment == []
    assert datetime.fromisoformat(alert.timestamp).tzinfo is not None


@pytest.mark.asyncio
async def test_build_alert_propagates_provider_errors():
    dns = DnsInfo(a_records=[ip("1.1.1.1")])
    with pytest.raises(RuntimeError, match="lookup failed"):
        await build_alert("example.com", ["tag"], False, dns, FailingProvider())