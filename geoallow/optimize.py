"""Range optimizer: minimal IPv4 CIDR cover (minus blocklist), exact IPv6 dedup."""

import ipaddress
import logging
from typing import Iterable, List, Optional, Tuple

from geoallow.errors import InvariantError
from geoallow.models import AddressRange, AllowSet, CountryRanges, IPv4Net, IPv6Net

logger = logging.getLogger(__name__)

Interval = Tuple[int, int]  # inclusive integer bounds


def to_intervals(nets: Iterable[IPv4Net], ranges: Iterable[AddressRange] = ()) -> List[Interval]:
    out = [(int(n.network_address), int(n.broadcast_address)) for n in nets]
    out.extend((int(s), int(e)) for s, e in ranges)
    return out


def merge_intervals(intervals: Iterable[Interval]) -> List[Interval]:
    """Sort and merge overlapping or adjacent intervals."""
    merged: List[Interval] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1] + 1:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def subtract_intervals(allow: List[Interval], block: List[Interval]) -> List[Interval]:
    """allow minus block; both must be merged (sorted, disjoint)."""
    out: List[Interval] = []
    j = 0
    for start, end in allow:
        cur = start
        while j < len(block) and block[j][1] < cur:
            j += 1
        k = j
        while k < len(block) and block[k][0] <= end and cur <= end:
            b_start, b_end = block[k]
            if b_start > cur:
                out.append((cur, b_start - 1))
            cur = max(cur, b_end + 1)
            k += 1
        if cur <= end:
            out.append((cur, end))
    return out


def intervals_to_networks(intervals: Iterable[Interval]) -> List[IPv4Net]:
    nets: List[IPv4Net] = []
    for start, end in intervals:
        nets.extend(ipaddress.summarize_address_range(ipaddress.IPv4Address(start),
                                                      ipaddress.IPv4Address(end)))
    return nets


def optimize_v4(nets: Iterable[IPv4Net], ranges: Iterable[AddressRange] = (),
                block: Optional[Iterable[IPv4Net]] = None) -> List[IPv4Net]:
    """Smallest set of CIDR blocks covering exactly (nets ∪ ranges) \\ block."""
    allow = merge_intervals(to_intervals(nets, ranges))
    if block:
        allow = subtract_intervals(allow, merge_intervals(to_intervals(block)))
    return intervals_to_networks(allow)


def dedup_v6(nets: Iterable[IPv6Net]) -> List[IPv6Net]:
    """Exact-match dedup only; IPv6 blocks are not aggregated."""
    return sorted(set(nets), key=lambda n: (int(n.network_address), n.prefixlen))


def check_no_default_route(allow: AllowSet) -> None:
    for n in list(allow.v4) + list(allow.v6):
        if n.prefixlen == 0:
            raise InvariantError(f"Optimized allowlist contains the default route {n}; refusing to continue")


def build_allowset(results: List[CountryRanges], block: Optional[List[IPv4Net]] = None,
                   include_v6: bool = True) -> AllowSet:
    """Combine all countries into one AllowSet and enforce its post-conditions."""
    v4_in = [n for r in results for n in r.v4]
    v4_ranges = [rg for r in results for rg in r.v4_ranges]
    v6_in = [n for r in results for n in r.v6] if include_v6 else []

    logger.info("Parsed entries: v4=%d, v4-ranges=%d, v6=%d", len(v4_in), len(v4_ranges), len(v6_in))
    allow = AllowSet(v4=optimize_v4(v4_in, v4_ranges, block), v6=dedup_v6(v6_in))
    logger.info("Optimized allowlist: v4=%d blocks, v6=%d blocks%s", len(allow.v4), len(allow.v6),
                f" (blocklist: {len(block)} entries)" if block else "")

    check_no_default_route(allow)
    if allow.is_empty():
        raise InvariantError("Optimized allowlist is empty; refusing to apply a ruleset")
    return allow
