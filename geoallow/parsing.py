"""Line and token parsers shared by providers and the blocklist loader."""

import ipaddress
import re
from typing import Iterable, List, Optional, Union

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

# ---------------- Regexes ----------------
ADD_LINE   = re.compile(r'^\s*add\s+\S+\s+(\S+)\s*$')    # add <set> <addr/cidr>
CIDR_OR_IP = re.compile(r'^\s*([0-9a-fA-F:.]+(?:/\d{1,3})?)\s*$')
COMMENT    = re.compile(r'^\s*[#;]')


def parse_addr_token(tok: str) -> Optional[Network]:
    """Return IPv4/IPv6 network for '1.2.3.0/24' or '1.2.3.4' (host->/32,/128)."""
    try:
        if '/' in tok:
            return ipaddress.ip_network(tok, strict=False)
        ip = ipaddress.ip_address(tok)
        return ipaddress.ip_network(f"{ip}/32" if ip.version == 4 else f"{ip}/128", strict=False)
    except ValueError:
        return None


def parse_entry(line: str) -> Optional[Network]:
    """Parse a single line from a list file into a network or None."""
    line = line.strip()
    if not line or COMMENT.match(line):
        return None
    m = ADD_LINE.match(line) or CIDR_OR_IP.match(line)
    if not m:
        return None
    return parse_addr_token(m.group(1))


def parse_lines(lines: Iterable[str]) -> List[Network]:
    return [n for n in (parse_entry(ln) for ln in lines) if n is not None]


def is_dangerous(net: Network) -> bool:
    """True for 0.0.0.0/x, ::/x entries, which must never reach an allowlist."""
    return net.network_address.is_unspecified
