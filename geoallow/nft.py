"""Unified backend: compile one nftables document for ``nft -f``.

The document re-creates table ``inet geoallow`` from scratch. Because nft
applies a file as a single transaction, the old table stays in place unless
the whole new one is accepted.
"""

import logging
from typing import List, Sequence

from geoallow import mitigation
from geoallow.chains import (LOG_PREFIX_BLACKLIST, LOG_PREFIX_BRUTEFORCE, LOG_PREFIX_GEO_FORWARD,
                             LOG_PREFIX_GEO_INPUT, PLACEHOLDER_V4, PRIVATE_NETWORKS_V4,
                             PRIVATE_NETWORKS_V6, Step, forward_steps, input_steps)
from geoallow.models import AllowSet, Settings

logger = logging.getLogger(__name__)

TABLE_FAMILY = "inet"
TABLE_NAME = "geoallow"
ELEMENTS_PER_LINE = 8


def format_elements(nets: Sequence, indent: str) -> str:
    items = [str(n) for n in nets]
    lines = [", ".join(items[i:i + ELEMENTS_PER_LINE]) for i in range(0, len(items), ELEMENTS_PER_LINE)]
    return (",\n" + indent).join(lines)


def static_set(name: str, family: int, nets: Sequence) -> List[str]:
    addr_type = "ipv4_addr" if family == 4 else "ipv6_addr"
    lines = [f"set {name} {{",
             f"    type {addr_type}",
             "    flags interval",
             "    auto-merge"]
    if nets:
        indent = " " * 16
        lines.append(f"    elements = {{ {format_elements(nets, indent)} }}")
    lines.append("}")
    return lines


def _both(settings: Settings, rule_v4: str, rule_v6: str) -> List[str]:
    return [rule_v4, rule_v6] if settings.geo_ipv6 else [rule_v4]


def render_step(step: Step, settings: Settings, hook: str) -> List[str]:
    policy = settings.mitigation
    port = settings.ssh_port
    geo_prefix = LOG_PREFIX_GEO_INPUT if hook == "input" else LOG_PREFIX_GEO_FORWARD

    if step is Step.LOOPBACK_ACCEPT:
        return ['iif "lo" accept']
    if step is Step.ESTABLISHED_ACCEPT:
        return ["ct state established,related accept"]
    if step is Step.INVALID_DROP:
        return ["ct state invalid drop"]
    if step is Step.ICMP_ACCEPT:
        return ["meta l4proto { icmp, ipv6-icmp } accept"]
    if step is Step.PRIVATE_ACCEPT:
        return ["ip saddr @private_v4 accept", "ip6 saddr @private_v6 accept"]
    if step is Step.ALLOW_MISS_DROP:
        return _both(settings,
                     f'ip saddr != @allow_v4 log prefix "{geo_prefix}" level warn drop',
                     f'ip6 saddr != @allow_v6 log prefix "{geo_prefix}" level warn drop')
    if step is Step.IPV6_ACCEPT:
        return ["meta nfproto ipv6 accept"]
    if step is Step.IPV6_DROP:
        return ["meta nfproto ipv6 drop"]
    if step is Step.BLACKLIST_DROP:
        return _both(settings,
                     mitigation.nft_blacklist_rule(4, LOG_PREFIX_BLACKLIST),
                     mitigation.nft_blacklist_rule(6, LOG_PREFIX_BLACKLIST))
    if step is Step.SSH_RATE_CHECK:
        return _both(settings,
                     mitigation.nft_rate_rule(policy, 4, port, LOG_PREFIX_BRUTEFORCE),
                     mitigation.nft_rate_rule(policy, 6, port, LOG_PREFIX_BRUTEFORCE))
    if step is Step.SSH_ACCEPT:
        return [f"tcp dport {port} accept"]
    if step is Step.DEFAULT_DROP:
        return []  # chain policy
    raise ValueError(f"Unhandled step {step}")


def compile_ruleset(settings: Settings, allow: AllowSet) -> str:
    """Render the complete document for the given AllowSet."""
    allow_v4 = allow.v4
    if not allow_v4:
        logger.warning("IPv4 allowlist is empty; using placeholder %s (all public IPv4 will be dropped)",
                       PLACEHOLDER_V4)
        allow_v4 = [PLACEHOLDER_V4]

    body: List[str] = []
    body += static_set("private_v4", 4, PRIVATE_NETWORKS_V4)
    body += static_set("private_v6", 6, PRIVATE_NETWORKS_V6)
    body += static_set("allow_v4", 4, allow_v4)
    if settings.geo_ipv6:
        if not allow.v6:
            logger.warning("IPv6 geo-blocking enabled but the IPv6 allowlist is empty")
        body += static_set("allow_v6", 6, allow.v6)
    for family in (4, 6):
        body += mitigation.nft_sets(settings.mitigation, family)

    body.append("")
    body.append("chain input {")
    body.append("    type filter hook input priority filter; policy drop;")
    for step in input_steps(settings):
        body += ["    " + r for r in render_step(step, settings, "input")]
    body.append("}")

    body.append("")
    body.append("chain forward {")
    body.append("    type filter hook forward priority filter - 1; policy accept;")
    for step in forward_steps(settings):
        body += ["    " + r for r in render_step(step, settings, "forward")]
    body.append("}")

    lines = [
        "#!/usr/sbin/nft -f",
        "# Generated by geoallow; do not edit.",
        f"table {TABLE_FAMILY} {TABLE_NAME}",
        f"delete table {TABLE_FAMILY} {TABLE_NAME}",
        f"table {TABLE_FAMILY} {TABLE_NAME} {{",
    ]
    lines += [("    " + b) if b else "" for b in body]
    lines.append("}")
    return "\n".join(lines) + "\n"
