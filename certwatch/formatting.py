"""Text formatting of alert batches for chat notifications."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from certwatch.alerts import AggregatedAlert

_IP_LIMIT = 3

# Multi-label public suffixes; any other top-level label is its own suffix.
_MULTI_LABEL_SUFFIXES = frozenset(
    """
    co.uk org.uk ac.uk gov.uk me.uk ltd.uk plc.uk net.uk sch.uk nhs.uk police.uk
    com.au net.au org.au edu.au gov.au asn.au id.au
    co.nz org.nz net.nz govt.nz ac.nz
    co.jp ne.jp or.jp ac.jp go.jp ad.jp ed.jp gr.jp lg.jp
    co.kr or.kr ne.kr go.kr ac.kr
    com.br net.br org.br gov.br edu.br
    com.cn net.cn org.cn gov.cn edu.cn
    com.mx org.mx net.mx gob.mx
    com.ar org.ar net.ar gob.ar
    com.tr org.tr net.tr gov.tr
    co.in net.in org.in firm.in gen.in ind.in gov.in ac.in
    co.za org.za web.za gov.za
    com.sg edu.sg org.sg net.sg gov.sg
    com.hk org.hk net.hk gov.hk edu.hk
    com.tw org.tw net.tw gov.tw edu.tw
    co.il org.il net.il ac.il gov.il
    com.ua org.ua net.ua
    co.id or.id web.id ac.id go.id
    com.my net.my org.my gov.my
    com.ph net.ph org.ph gov.ph
    com.vn net.vn org.vn gov.vn
    com.pk net.pk org.pk gov.pk
    com.ng org.ng gov.ng
    com.eg org.eg gov.eg
    com.sa net.sa org.sa gov.sa
    co.th in.th ac.th go.th
    com.co net.co org.co gov.co
    com.pe org.pe net.pe gob.pe
    com.ve net.ve org.ve
    com.ru net.ru org.ru
    com.pl net.pl org.pl
    com.es org.es nom.es
    com.gr org.gr net.gr
    com.pt org.pt
    co.at or.at
    github.io gitlab.io herokuapp.com blogspot.com appspot.com
    azurewebsites.net cloudfront.net firebaseapp.com web.app
    pages.dev workers.dev netlify.app vercel.app
    """.split()
)


def registrable_domain(domain: str) -> str | None:
    """The registrable part of ``domain`` (suffix plus one label), or None."""
    name = domain[:-1] if domain.endswith(".") else domain
    if not name:
        return None
    labels = name.split(".")
    if any(not label for label in labels):
        return None
    lowered = [label.lower() for label in labels]

    suffix_len = 1
    for n in range(len(labels), 1, -1):
        if ".".join(lowered[-n:]) in _MULTI_LABEL_SUFFIXES:
            suffix_len = n
            break

    if len(labels) <= suffix_len:
        return None
    return ".".join(labels[-(suffix_len + 1):])


class TextFormatter(ABC):
    """Formats a batch of alerts into a single message."""

    @abstractmethod
    def format_batch(self, alerts: Sequence[AggregatedAlert]) -> str:
        """Return the whole batch as one string."""


def _sort_key(aggregated: AggregatedAlert) -> tuple:
    alert = aggregated.alert
    base = registrable_domain(alert.domain)
    org = next(
        (e.asn_info.as_name for e in alert.enrichment[:1] if e.asn_info is not None),
        None,
    )
    return (
        base is None,
        base or "",
        alert.domain.lower(),
        org is None,
        (org or "").lower(),
    )


class SlackTextFormatter(TextFormatter):
    """Compact Slack lines with lookup links for domains and addresses."""

    def format_line(self, aggregated_alert: AggregatedAlert) -> str:
        """One line describing a single aggregated alert."""
        alert = aggregated_alert.alert
        base = registrable_domain(alert.domain) or alert.domain

        tag_part = f"[{', '.join(alert.source_tag)}] "

        domain_link = f"<https://urlscan.io/search/#page.domain%3A{base}|{alert.domain}>"
        dedupe_part = (
            f" (+{aggregated_alert.deduplicated_count} more)"
            if aggregated_alert.deduplicated_count > 0
            else ""
        )
        other_domain_links = (
            f"(<https://www.shodan.io/search?query=hostname%3A{base}|shodan>"
            f"|<https://www.virustotal.com/gui/domain/{base}|vt>)"
        )
        domain_part = f"{domain_link}{dedupe_part}{other_domain_links}"

        all_ips = alert.all_ips()
        ip_part = ""
        if all_ips:
            ipv4 = [a for a in all_ips if a.version == 4]
            search_ips = (ipv4 or all_ips)[:_IP_LIMIT]
            query = "%20OR%20".join(f"%22{a}%22" for a in search_ips)
            first = all_ips[0]
            link_text = f"{first} (+{len(all_ips) - 1} more)" if len(all_ips) > 1 else str(first)
            ip_link = f"<https://urlscan.io/search/#page.ip%3A({query})|{link_text}>"
            other_ip_links = (
                f"(<https://www.shodan.io/search?query=ip%3A{first}|shodan>"
                f"|<https://www.virustotal.com/gui/ip-address/{first}|vt>)"
            )
            ip_part = f" | {ip_link} {other_ip_links}"

        info = alert.enrichment[0].asn_info if alert.enrichment else None
        if info is not None:
            enrichment_part = f" @ {info.as_number}/{info.as_name}, {info.country_code or '??'}"
        elif all_ips:
            enrichment_part = " @ /?, ??"
        else:
            enrichment_part = ""

        return f"{tag_part}{domain_part}{ip_part}{enrichment_part}"

    def format_batch(self, alerts: Sequence[AggregatedAlert]) -> str:
        """Sorted lines wrapped in a code block; empty string for no alerts."""
        if not alerts:
            return ""
        lines = (self.format_line(a) for a in sorted(alerts, key=_sort_key))
        return "```\n" + "\n".join(lines) + "\n```"