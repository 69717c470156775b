"""SSH brute-force mitigation.

One policy (``BruteForcePolicy``) is rendered twice: as nftables dynamic sets
with timeouts, and as iptables ``recent`` matches. ``AttemptTracker`` is the
reference behaviour both renderings implement: every new SSH connection from a
source is recorded; connection ``ban_hit`` (``hitcount + 1``) within ``window``
seconds gets the source blacklisted for ``blacklist_timeout`` seconds, and
blacklisted sources are dropped before any SSH accept.
"""

from collections import defaultdict, deque
from enum import Enum
from typing import Deque, Dict, List, Tuple

from geoallow.models import BruteForcePolicy

# iptables' xt_recent keeps 20 timestamps per address by default
RECENT_MAX_HITCOUNT = 20

SSH_RATE_SET = "ssh_rate"
SSH_BLACKLIST_SET = "ssh_blacklist"
RECENT_SSH_NAME = "GEOALLOW_SSH"
RECENT_BLACKLIST_NAME = "GEOALLOW_BLACKLIST"

NFT_UNITS = (("second", 1), ("minute", 60), ("hour", 3600), ("day", 86400))


def ban_hit(policy: BruteForcePolicy) -> int:
    """Number of the connection, inside one window, that blacklists a source."""
    return policy.hitcount + 1


class Verdict(Enum):
    ACCEPT = "accept"
    BLACKLISTED = "blacklisted"   # newly promoted on this attempt
    DROP = "drop"                 # already on the blacklist


class AttemptTracker:
    """In-memory model of the per-source state machine."""

    def __init__(self, policy: BruteForcePolicy):
        self.policy = policy
        self._attempts: Dict[str, Deque[float]] = defaultdict(deque)
        self._blacklist: Dict[str, float] = {}

    def is_blacklisted(self, source: str, now: float) -> bool:
        until = self._blacklist.get(source)
        if until is None:
            return False
        if until <= now:
            del self._blacklist[source]
            return False
        return True

    def new_connection(self, source: str, now: float) -> Verdict:
        if self.is_blacklisted(source, now):
            return Verdict.DROP
        times = self._attempts[source]
        times.append(now)
        while times and times[0] <= now - self.policy.window:
            times.popleft()
        if len(times) >= ban_hit(self.policy):
            self._blacklist[source] = now + self.policy.blacklist_timeout
            times.clear()
            return Verdict.BLACKLISTED
        return Verdict.ACCEPT


# ---------------- nftables rendering ----------------
def nft_rate(policy: BruteForcePolicy) -> Tuple[int, str]:
    """Express hitcount/window as an integer nft rate in the smallest exact unit."""
    for unit, seconds in NFT_UNITS:
        scaled = policy.hitcount * seconds
        if scaled % policy.window == 0 and scaled // policy.window >= 1:
            return scaled // policy.window, unit
    # Fall back to rounding per day; only reached for odd windows
    return max(1, round(policy.hitcount * 86400 / policy.window)), "day"


def nft_sets(policy: BruteForcePolicy, family: int) -> List[str]:
    addr_type = "ipv4_addr" if family == 4 else "ipv6_addr"
    sfx = f"_v{family}"
    return [
        f"set {SSH_RATE_SET}{sfx} {{ type {addr_type}; flags dynamic,timeout; timeout {policy.window}s; }}",
        f"set {SSH_BLACKLIST_SET}{sfx} {{ type {addr_type}; flags dynamic,timeout; timeout {policy.blacklist_timeout}s; }}",
    ]


def nft_blacklist_rule(family: int, log_prefix: str) -> str:
    proto = "ip" if family == 4 else "ip6"
    return f'{proto} saddr @{SSH_BLACKLIST_SET}_v{family} log prefix "{log_prefix}" drop'


def nft_rate_rule(policy: BruteForcePolicy, family: int, port: int, log_prefix: str) -> str:
    proto = "ip" if family == 4 else "ip6"
    rate, unit = nft_rate(policy)
    # A full bucket passes ``burst`` packets; the next one is over the limit
    burst = ban_hit(policy) - 1
    return (f"tcp dport {port} ct state new "
            f"update @{SSH_RATE_SET}_v{family} {{ {proto} saddr limit rate over {rate}/{unit} burst {burst} packets }} "
            f"add @{SSH_BLACKLIST_SET}_v{family} {{ {proto} saddr }} "
            f'log prefix "{log_prefix}" drop')


# ---------------- iptables rendering ----------------
def recent_blacklist_check(policy: BruteForcePolicy) -> List[str]:
    return ["-m", "recent", "--name", RECENT_BLACKLIST_NAME, "--rcheck",
            "--seconds", str(policy.blacklist_timeout)]


def recent_ssh_track(port: int) -> List[str]:
    return ["-p", "tcp", "--dport", str(port), "-m", "conntrack", "--ctstate", "NEW",
            "-m", "recent", "--name", RECENT_SSH_NAME, "--set"]


def recent_ssh_exceeded(policy: BruteForcePolicy, port: int) -> List[str]:
    return ["-p", "tcp", "--dport", str(port), "-m", "conntrack", "--ctstate", "NEW",
            "-m", "recent", "--name", RECENT_SSH_NAME, "--rcheck",
            "--seconds", str(policy.window), "--hitcount", str(ban_hit(policy))]


def recent_blacklist_add() -> List[str]:
    return ["-m", "recent", "--name", RECENT_BLACKLIST_NAME, "--set"]
