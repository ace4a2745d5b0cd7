import ipaddress

import pytest

from certwatch.alerts import Alert, AsnInfo, DnsInfo, EnrichmentInfo
from certwatch.metrics import Metrics
from certwatch.rules import (
    AllExpr,
    AnyExpr,
    Asns,
    DomainRegex,
    EnrichmentLevel,
    IpNetworks,
    NotAsns,
    NotIpNetworks,
    PreFilter,
    Rule,
    RuleError,
    RuleMatcher,
    RuleSet,
    load_rules,
    parse_expression,
)


def make_alert(domain="example.com", ips=(), asns=()):
    addresses = [ipaddress.ip_address(ip) for ip in ips]
    enrichment = [
        EnrichmentInfo(ip=addr, asn_info=AsnInfo(as_number=asn, as_name="ORG", country_code="US"))
        for addr, asn in zip(addresses, asns)
    ]
    return Alert(
        domain=domain,
        dns=DnsInfo(
            a_records=[a for a in addresses if a.version == 4],
            aaaa_records=[a for a in addresses if a.version == 6],
        ),
        enrichment=enrichment,
    )


def test_domain_regex_matches_by_search():
    expr = parse_expression({"domain_regex": "paypal"})
    assert expr.matches(make_alert("login-paypal.example.com"))
    assert not expr.matches(make_alert("example.org"))


def test_invalid_domain_regex_never_matches():
    expr = DomainRegex("([")
    assert not expr.matches(make_alert("(["))


def test_required_levels():
    assert parse_expression({"domain_regex": "x"}).required_level() == EnrichmentLevel.NONE
    assert parse_expression({"asns": [1]}).required_level() == EnrichmentLevel.STANDARD
    mixed = parse_expression({"all": [{"domain_regex": "x"}, {"not_ip_networks": ["10.0.0.0/8"]}]})
    assert mixed.required_level() == EnrichmentLevel.STANDARD
    assert AllExpr([]).required_level() == EnrichmentLevel.NONE
    assert EnrichmentLevel.NONE < EnrichmentLevel.STANDARD


def test_all_and_any_semantics():
    alert = make_alert("shop.example.com")
    both = parse_expression({"all": [{"domain_regex": "shop"}, {"domain_regex": "example"}]})
    one = parse_expression({"any": [{"domain_regex": "nomatch"}, {"domain_regex": "shop"}]})
    neither = parse_expression({"any": [{"domain_regex": "nomatch"}, {"domain_regex": "other"}]})
    assert both.matches(alert)
    assert one.matches(alert)
    assert not neither.matches(alert)
    assert AllExpr([]).matches(alert)
    assert not AnyExpr([]).matches(alert)


def test_asns_and_not_asns():
    alert = make_alert(ips=["1.1.1.1"], asns=[13335])
    assert Asns([13335]).matches(alert)
    assert not Asns([15169]).matches(alert)
    assert NotAsns([15169]).matches(alert)
    assert not NotAsns([13335]).matches(alert)


def test_not_asns_without_enrichment_is_false():
    assert not NotAsns([13335]).matches(make_alert(ips=["1.1.1.1"]))


def test_ip_networks_and_not_ip_networks():
    alert = make_alert(ips=["10.1.2.3", "2606:4700:4700::1111"])
    assert parse_expression({"ip_networks": ["10.0.0.0/8"]}).matches(alert)
    assert parse_expression({"ip_networks": ["2606:4700::/32"]}).matches(alert)
    assert not parse_expression({"ip_networks": ["192.168.0.0/16"]}).matches(alert)
    assert parse_expression({"not_ip_networks": ["192.168.0.0/16"]}).matches(alert)
    assert not parse_expression({"not_ip_networks": ["10.0.0.0/8"]}).matches(alert)


def test_not_ip_networks_without_ips_is_false():
    assert not NotIpNetworks([ipaddress.ip_network("10.0.0.0/8")]).matches(make_alert())
    assert not IpNetworks([ipaddress.ip_network("10.0.0.0/8")]).matches(make_alert())


@pytest.mark.parametrize(
    "data",
    [
        {"domain_regex": "a", "asns": [1]},
        {"unknown": 1},
        {},
        "domain_regex",
        {"ip_networks": ["not-a-network"]},
        {"asns": ["abc"]},
        {"asns": [-1]},
        {"all": "notalist"},
        {"domain_regex": 5},
    ],
)
def test_parse_expression_errors(data):
    with pytest.raises(RuleError):
        parse_expression(data)


def test_rule_computes_required_level():
    rule = Rule("r", Asns([1]))
    assert rule.required_level == EnrichmentLevel.STANDARD
    assert rule.is_match(make_alert(ips=["1.1.1.1"], asns=[1]))


def test_prefilter():
    assert not PreFilter(None).is_match("anything.com")
    assert not PreFilter([]).is_match("anything.com")
    pre = PreFilter([r"\.google\.com$", "^cdn"])
    assert pre.is_match("mail.google.com")
    assert pre.is_match("cdn.example.net")
    assert not pre.is_match("example.net")


def test_prefilter_invalid_pattern():
    with pytest.raises(RuleError):
        PreFilter(["(["])


def test_rule_matcher_stages_and_metrics():
    metrics = Metrics()
    rules = [
        Rule("domain-rule", DomainRegex("bank")),
        Rule("asn-rule", Asns([64500])),
    ]
    matcher = RuleMatcher.from_rules(rules, metrics)
    assert [r.name for r in matcher.stage_1_rules] == ["domain-rule"]
    assert [r.name for r in matcher.stage_2_rules] == ["asn-rule"]

    alert = make_alert("mybank.example.com", ips=["1.1.1.1"], asns=[64500])
    assert matcher.matches(alert, EnrichmentLevel.NONE) == ["domain-rule"]
    assert matcher.matches(alert, EnrichmentLevel.STANDARD) == ["asn-rule"]
    assert metrics.registry.counter("rule_matches_total", {"rule": "domain-rule"}).value == 1
    assert not matcher.is_ignored("mybank.example.com")


def test_rule_matcher_ignore_patterns():
    matcher = RuleMatcher(RuleSet(ignore_patterns=["example"]), Metrics())
    assert matcher.is_ignored("www.example.com")
    assert not matcher.is_ignored("other.net")


def test_load_rules_from_files(tmp_path):
    first = tmp_path / "a.yml"
    first.write_text(
        "ignore:\n"
        "  - '\\.ignored\\.com$'\n"
        "rules:\n"
        "  - name: phishing\n"
        "    domain_regex: 'login'\n"
        "  - name: cloud\n"
        "    all:\n"
        "      - domain_regex: 'shop'\n"
        "      - asns: [13335]\n",
        encoding="utf-8",
    )
    second = tmp_path / "b.yml"
    second.write_text(
        "rules:\n  - name: nets\n    not_ip_networks: ['10.0.0.0/8']\n",
        encoding="utf-8",
    )
    rule_set = load_rules([first, str(second)])
    assert rule_set.file_stats == {first: 2, second: 1}
    assert rule_set.ignore_patterns == [r"\.ignored\.com$"]
    assert [r.name for r in rule_set.rules] == ["phishing", "cloud", "nets"]
    assert [r.required_level for r in rule_set.rules] == [
        EnrichmentLevel.NONE,
        EnrichmentLevel.STANDARD,
        EnrichmentLevel.STANDARD,
    ]
    matcher = RuleMatcher(rule_set, Metrics())
    assert matcher.is_ignored("x.ignored.com")
    assert matcher.matches(make_alert("login.example.com"), EnrichmentLevel.NONE) == ["phishing"]


def test_load_rules_without_files_is_empty():
    for files in (None, []):
        rule_set = load_rules(files)
        assert rule_set.rules == []
        assert rule_set.file_stats == {}


def test_load_rules_missing_file(tmp_path):
    with pytest.raises(RuleError, match="Failed to read rule file"):
        load_rules([tmp_path / "missing.yml"])


def test_load_rules_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yml"
    path.write_text("rules: [\n", encoding="utf-8")
    with pytest.raises(RuleError, match="Failed to parse YAML"):
        load_rules([path])


def test_load_rules_rule_without_name(tmp_path):
    path = tmp_path / "noname.yml"
    path.write_text("rules:\n  - domain_regex: 'x'\n", encoding="utf-8")
    with pytest.raises(RuleError):
        load_rules([path])