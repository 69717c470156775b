"""Ordered, backend-neutral description of the ingress and forward chains.

Both compilers walk the same step lists, so rule order (and therefore the
allowed/denied traffic) is defined in exactly one place.
"""

import ipaddress
from enum import Enum
from typing import List

from geoallow.models import Ipv6Mode, Settings

PRIVATE_NETWORKS_V4 = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),  # Link-local
]
PRIVATE_NETWORKS_V6 = [
    ipaddress.ip_network("fc00::/7"),        # Unique local
    ipaddress.ip_network("fe80::/10"),       # Link-local
]

# Used when the v4 allowlist is empty at compile time: a TEST-NET-1 address
# keeps the set non-empty without granting anything reachable.
PLACEHOLDER_V4 = ipaddress.ip_network("192.0.2.1/32")

LOG_PREFIX_GEO_INPUT = "GEO INPUT DROP: "
LOG_PREFIX_GEO_FORWARD = "GEO FORWARD DROP: "
LOG_PREFIX_BLACKLIST = "SSH BLACKLIST DROP: "
LOG_PREFIX_BRUTEFORCE = "SSH BRUTEFORCE: "


class Step(Enum):
    LOOPBACK_ACCEPT = "loopback-accept"
    ESTABLISHED_ACCEPT = "established-accept"
    INVALID_DROP = "invalid-drop"
    ICMP_ACCEPT = "icmp-accept"
    PRIVATE_ACCEPT = "private-accept"
    ALLOW_MISS_DROP = "allow-miss-drop"
    IPV6_ACCEPT = "ipv6-accept"
    IPV6_DROP = "ipv6-drop"
    BLACKLIST_DROP = "blacklist-drop"
    SSH_RATE_CHECK = "ssh-rate-check"
    SSH_ACCEPT = "ssh-accept"
    DEFAULT_DROP = "default-drop"


def ipv6_step(mode: Ipv6Mode) -> List[Step]:
    if mode is Ipv6Mode.OPEN:
        return [Step.IPV6_ACCEPT]
    if mode is Ipv6Mode.BLOCKED:
        return [Step.IPV6_DROP]
    return []


def input_steps(settings: Settings) -> List[Step]:
    """Ingress chain, default deny."""
    return [
        Step.LOOPBACK_ACCEPT,
        Step.ESTABLISHED_ACCEPT,
        Step.INVALID_DROP,
        Step.ICMP_ACCEPT,
        Step.PRIVATE_ACCEPT,
        Step.ALLOW_MISS_DROP,
        *ipv6_step(settings.ipv6_mode),
        Step.BLACKLIST_DROP,
        Step.SSH_RATE_CHECK,
        Step.SSH_ACCEPT,
        Step.DEFAULT_DROP,
    ]


def forward_steps(settings: Settings) -> List[Step]:
    """Forward chain, default accept; runs ahead of the container engine's rules."""
    steps = [
        Step.ESTABLISHED_ACCEPT,
        Step.INVALID_DROP,
        Step.PRIVATE_ACCEPT,
        Step.ALLOW_MISS_DROP,
    ]
    if settings.ipv6_mode is Ipv6Mode.BLOCKED:
        steps.append(Step.IPV6_DROP)
    return steps
