import hashlib
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from geoallow.errors import FetchError
from geoallow.fetch import Fetcher
from geoallow.models import Provider, Settings
from geoallow.runner import CommandRunner

BUILTIN_CHAINS = ["INPUT", "FORWARD", "OUTPUT"]
ALL_TOOLS = {"nft", "iptables", "iptables-restore", "ip6tables", "ip6tables-restore", "ipset"}
LEGACY_ONLY = ALL_TOOLS - {"nft"}


class FakeRunner(CommandRunner):
    """In-memory nft/iptables/ipset host. Records every command it is given."""

    def __init__(self, tools=ALL_TOOLS, dry_run=False, docker=False):
        super().__init__(dry_run=dry_run)
        self.tools = set(tools)
        self.calls: List[List[str]] = []
        self.nft_table: Optional[str] = None
        self.nft_check_fails = False
        self.chains: Dict[int, Dict[str, List[str]]] = {}
        for family in (4, 6):
            self.chains[family] = {c: [] for c in BUILTIN_CHAINS}
            if docker:
                self.chains[family]["DOCKER-USER"] = []
        self.ipsets: Dict[str, List[str]] = {}
        self.ipset_options: Dict[str, str] = {}

    def which(self, name):
        return f"/usr/sbin/{name}" if name in self.tools else None

    def mutations(self) -> List[List[str]]:
        probes = ("-S", "list", "-c", "--test")
        return [c for c in self.calls if not any(p in c for p in probes)]

    def _execute(self, args, input):
        self.calls.append(list(args))
        tool = args[0]
        if tool not in self.tools:
            raise FileNotFoundError(tool)
        if tool == "nft":
            return self._nft(args)
        if tool in ("iptables", "ip6tables"):
            return self._iptables(4 if tool == "iptables" else 6, args[1:])
        if tool in ("iptables-restore", "ip6tables-restore"):
            return self._restore(4 if tool == "iptables-restore" else 6, args[1:])
        if tool == "ipset":
            return self._ipset(args[1:], input)
        return self._done(args, 127)

    @staticmethod
    def _done(args, code=0, stdout=""):
        return subprocess.CompletedProcess(args, code, stdout, "" if code == 0 else "error")

    def _nft(self, args):
        if args[1:3] == ["-c", "-f"]:
            return self._done(args, 1 if self.nft_check_fails else 0)
        if args[1] == "-f":
            self.nft_table = Path(args[2]).read_text()
            return self._done(args)
        if args[1] == "list":
            if self.nft_table is None:
                return self._done(args, 1)
            return self._done(args, 0, self.nft_table)
        if args[1] == "delete":
            if self.nft_table is None:
                return self._done(args, 1)
            self.nft_table = None
            return self._done(args)
        return self._done(args, 1)

    def _iptables(self, family, rest):
        chains = self.chains[family]
        op, chain = rest[0], rest[1]
        if chain not in chains:
            return self._done(rest, 1)
        if op == "-S":
            head = f"-P {chain} ACCEPT" if chain in BUILTIN_CHAINS else f"-N {chain}"
            return self._done(rest, 0, "\n".join([head] + chains[chain]) + "\n")
        if op == "-D":
            spec = " ".join(["-A", chain] + rest[2:])
            if spec not in chains[chain]:
                return self._done(rest, 1)
            chains[chain].remove(spec)
        elif op == "-I":
            chains[chain].insert(int(rest[2]) - 1, " ".join(["-A", chain] + rest[3:]))
        elif op == "-F":
            chains[chain].clear()
        elif op == "-X":
            del chains[chain]
        return self._done(rest)

    def _restore(self, family, rest):
        if "--test" in rest:
            return self._done(rest)
        chains = self.chains[family]
        for line in Path(rest[-1]).read_text().splitlines():
            if line.startswith(":"):
                chains[line[1:].split()[0]] = []
            elif line.startswith("-A "):
                chain = line.split()[1]
                chains[chain].append(line)
        return self._done(rest)

    def _ipset(self, rest, input):
        if rest[0] == "restore":
            for line in (input or "").splitlines():
                parts = line.split()
                if parts[0] == "create":
                    options = " ".join(p for p in parts[2:] if p != "-exist")
                    if self.ipset_options.get(parts[1], options) != options:
                        return self._done(rest, 1)
                    self.ipset_options[parts[1]] = options
                    self.ipsets.setdefault(parts[1], [])
                elif parts[0] == "flush":
                    self.ipsets[parts[1]] = []
                elif parts[0] == "add":
                    self.ipsets[parts[1]].append(parts[2])
                elif parts[0] == "swap":
                    a, b = parts[1], parts[2]
                    self.ipsets[a], self.ipsets[b] = self.ipsets[b], self.ipsets[a]
                    self.ipset_options[a], self.ipset_options[b] = self.ipset_options[b], self.ipset_options[a]
                elif parts[0] == "destroy":
                    del self.ipsets[parts[1]]
                    self.ipset_options.pop(parts[1], None)
            return self._done(rest)
        if rest[0] == "list":
            return self._done(rest, 0 if rest[-1] in self.ipsets else 1)
        if rest[0] == "destroy":
            self.ipsets.pop(rest[1], None)
            self.ipset_options.pop(rest[1], None)
            return self._done(rest)
        return self._done(rest, 1)

    def jumps(self, family, chain, target):
        return [r for r in self.chains[family].get(chain, []) if r == f"-A {chain} -j {target}"]


class FakeFetcher(Fetcher):
    """Serves canned payloads by URL; unknown URLs fail like an unreachable host."""

    def __init__(self, pages=None):
        super().__init__(timeout=1, max_retries=0)
        self.pages: Dict[str, bytes] = {}
        self.requested: List[str] = []
        for url, body in (pages or {}).items():
            self.add(url, body)

    def add(self, url, body):
        self.pages[url] = body.encode("utf-8") if isinstance(body, str) else body

    def get(self, url):
        self.requested.append(url)
        if url not in self.pages:
            raise FetchError(f"Failed to fetch {url} after 1 attempts: unreachable")
        return self.pages[url]


IPDENY_V4 = "https://www.ipdeny.com/ipblocks/data/aggregated/{cc}-aggregated.zone"
IPDENY_V6 = "https://www.ipdeny.com/ipv6/ipaddresses/aggregated/{cc}-aggregated.zone"

ZONES_V4 = {
    "it": "2.32.0.0/14\n5.8.0.0/19\n5.8.32.0/19\n",
    "fr": "2.0.0.0/12\n5.39.0.0/17\n",
}
ZONES_V6 = {
    "it": "2001:b00::/29\n2a00:d40::/32\n",
    "fr": "2001:660::/32\n2a00:d40::/32\n",
}

RIPE_DATA = "\n".join([
    "2|ripencc|20250101|5|19830705|20250101|+0100",
    "ripencc|DE|ipv4|2.160.0.0|1048576|20100712|allocated",
    "ripencc|DE|ipv4|5.10.0.0|3072|20110101|allocated",
    "ripencc|DE|ipv4|9.9.9.0|256|20110101|assigned",
    "ripencc|DE|ipv6|2001:67c::|29|20050101|allocated",
    "ripencc|NL|ipv4|31.0.0.0|65536|20110101|allocated",
    "ripencc|DE|ipv4|bogus|256|20110101|allocated",
]) + "\n"


def ripe_md5_text(data: str) -> str:
    return f"MD5 (delegated-ripencc-latest) = {hashlib.md5(data.encode()).hexdigest()}\n"


def ipdeny_pages(*countries, v6=True):
    pages = {}
    for cc in countries:
        pages[IPDENY_V4.format(cc=cc)] = ZONES_V4[cc]
        if v6:
            pages[IPDENY_V6.format(cc=cc)] = ZONES_V6[cc]
    return pages


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def legacy_runner():
    return FakeRunner(tools=LEGACY_ONLY)


@pytest.fixture
def fetcher():
    return FakeFetcher(ipdeny_pages("it", "fr"))


@pytest.fixture
def settings(tmp_path):
    return Settings(countries={"IT": Provider.IPDENY, "FR": Provider.IPDENY},
                    work_dir=tmp_path / "work", lock_file=tmp_path / "geoallow.lock",
                    check_connectivity=False)
