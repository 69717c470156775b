"""Core value types: countries, providers, ranges, settings."""

import ipaddress
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from geoallow.errors import ConfigError

IPv4Net = ipaddress.IPv4Network
IPv6Net = ipaddress.IPv6Network
AddressRange = Tuple[ipaddress.IPv4Address, ipaddress.IPv4Address]

COUNTRY_RE = re.compile(r'^[A-Z]{2}$')


class Provider(Enum):
    IPDENY = "ipdeny"     # aggregated zone files
    RIPE = "ripe"         # delegated registry file + md5
    NIRSOFT = "nirsoft"   # per-country CSV, IPv4 ranges only

    @classmethod
    def parse(cls, name: str) -> "Provider":
        try:
            return cls(name.strip().lower())
        except ValueError:
            valid = ", ".join(p.value for p in cls)
            raise ConfigError(f"Unknown provider '{name}' (valid: {valid})") from None


class Backend(Enum):
    NFTABLES = "nftables"   # unified
    IPTABLES = "iptables"   # legacy iptables + ipset


class Ipv6Mode(Enum):
    OPEN = "open"
    GEO = "geo"
    BLOCKED = "blocked"


def normalize_country(code: str) -> str:
    cc = code.strip().upper()
    if not COUNTRY_RE.match(cc):
        raise ConfigError(f"Invalid country code: '{code}'")
    return cc


def parse_country_selection(text: str, default_provider: Provider) -> Dict[str, Provider]:
    """Parse 'IT,FR' or 'ipdeny:IT,FR;ripe:DE' into {country: provider}.

    Duplicates under the same provider collapse; one country bound to two
    providers is rejected.
    """
    selection: Dict[str, Provider] = {}
    if not text or not text.strip():
        raise ConfigError("No countries specified")
    for group in text.split(";"):
        group = group.strip()
        if not group:
            continue
        if ":" in group:
            pname, codes = group.split(":", 1)
            provider = Provider.parse(pname)
        else:
            provider, codes = default_provider, group
        for code in codes.split(","):
            if not code.strip():
                continue
            cc = normalize_country(code)
            bound = selection.get(cc)
            if bound is not None and bound is not provider:
                raise ConfigError(f"Country {cc} requested from both {bound.value} and {provider.value}")
            selection[cc] = provider
    if not selection:
        raise ConfigError(f"No valid country codes in '{text}'")
    return selection


@dataclass
class CountryRanges:
    """What one provider returned for one country."""
    country: str
    provider: Provider
    v4: List[IPv4Net] = field(default_factory=list)
    v6: List[IPv6Net] = field(default_factory=list)
    # Start/end pairs from providers that do not publish CIDR (Nirsoft)
    v4_ranges: List[AddressRange] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.v4 or self.v6 or self.v4_ranges)


@dataclass
class AllowSet:
    v4: List[IPv4Net]
    v6: List[IPv6Net]

    def is_empty(self) -> bool:
        return not (self.v4 or self.v6)


@dataclass
class BruteForcePolicy:
    """SSH mitigation parameters shared by both backends.

    A source opening more than `hitcount` new connections within `window`
    seconds is blacklisted for `blacklist_timeout` seconds.
    """
    hitcount: int = 10
    window: int = 10
    blacklist_timeout: int = 3600


@dataclass
class Settings:
    countries: Dict[str, Provider]
    ssh_port: int = 22
    use_blocklist: bool = False
    update_blocklists: bool = False
    blocklist_index_url: str = "https://raw.githubusercontent.com/Adamm00/IPSet_ASUS/master/filter.list"
    ipv6_mode: Ipv6Mode = Ipv6Mode.OPEN
    backend: Optional[Backend] = None   # None = auto-detect
    work_dir: Path = Path("/var/lib/geoallow")
    blocklist_dir: Optional[Path] = None
    workers: int = 4
    timeout: int = 30
    max_retries: int = 2
    mitigation: BruteForcePolicy = field(default_factory=BruteForcePolicy)
    lock_file: Path = Path("/run/geoallow.lock")
    dry_run: bool = False
    print_ruleset: bool = False
    check_connectivity: bool = True

    @property
    def allow_dir(self) -> Path:
        return self.work_dir / "allow"

    @property
    def block_dir(self) -> Path:
        return self.blocklist_dir or (self.work_dir / "block")

    @property
    def geo_ipv6(self) -> bool:
        return self.ipv6_mode is Ipv6Mode.GEO
