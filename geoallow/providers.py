"""Provider clients: download and normalize per-country ranges.

Each client exposes ``prepare()`` (once per run) and ``fetch(country)``
(once per requested country, possibly from worker threads). ``fetch`` raises
FetchError when nothing usable was obtained for that country; ``prepare``
raises IntegrityError when the whole provider cannot be trusted.
"""

import csv
import hashlib
import io
import ipaddress
import logging
from typing import Dict, Iterable, List, Tuple

from geoallow.errors import FetchError, IntegrityError
from geoallow.fetch import Fetcher
from geoallow.models import AddressRange, CountryRanges, IPv4Net, Provider
from geoallow.parsing import is_dangerous, parse_lines

logger = logging.getLogger(__name__)

IPDENY_V4_URL = "https://www.ipdeny.com/ipblocks/data/aggregated/{cc}-aggregated.zone"
IPDENY_V6_URL = "https://www.ipdeny.com/ipv6/ipaddresses/aggregated/{cc}-aggregated.zone"
RIPE_URL = "https://ftp.ripe.net/pub/stats/ripencc/delegated-ripencc-latest"
RIPE_MD5_URL = RIPE_URL + ".md5"
NIRSOFT_URL = "https://www.nirsoft.net/countryip/{cc}.csv"
NIRSOFT_MIN_COLUMNS = 4


def _drop_dangerous(nets: List, label: str) -> List:
    """Discard a whole list that contains a 0.0.0.0/::-rooted entry."""
    bad = [n for n in nets if is_dangerous(n)]
    if bad:
        logger.error("DANGEROUS entry %s found in %s list. Discarding it.", bad[0], label)
        return []
    return nets


class ProviderClient:
    provider: Provider
    hosts: Tuple[str, ...] = ()

    def __init__(self, fetcher: Fetcher):
        self.fetcher = fetcher

    def prepare(self) -> None:
        pass

    def fetch(self, country: str) -> CountryRanges:
        raise NotImplementedError


# ---------------- ipdeny (aggregated zones) ----------------
class IpdenyClient(ProviderClient):
    provider = Provider.IPDENY
    hosts = ("www.ipdeny.com",)

    def fetch(self, country: str) -> CountryRanges:
        cc = country.lower()
        result = CountryRanges(country, self.provider)
        failed = []
        for family, url in ((4, IPDENY_V4_URL), (6, IPDENY_V6_URL)):
            label = f"IPv{family} ({country})"
            try:
                text = self.fetcher.get_text(url.format(cc=cc))
            except FetchError as e:
                logger.warning("Failed to download %s list: %s. Skipping.", label, e)
                failed.append(label)
                continue
            nets = _drop_dangerous([n for n in parse_lines(text.splitlines()) if n.version == family], label)
            if not nets:
                logger.warning("Downloaded %s list is empty. Ignoring.", label)
                continue
            if family == 4:
                result.v4 = nets
            else:
                result.v6 = nets
        if result.is_empty():
            raise FetchError(f"No usable ipdeny data for {country}"
                             + (f" (failed: {', '.join(failed)})" if failed else ""))
        return result


# ---------------- RIPE NCC (delegated file + md5) ----------------
def expected_md5(md5_text: str) -> str:
    """Checksum from 'MD5 (delegated-ripencc-latest) = <hex>'."""
    for line in md5_text.splitlines():
        if "MD5" in line:
            parts = line.split()
            if parts:
                return parts[-1].strip().lower()
    return ""


def hosts_to_networks(start: str, hosts: int) -> List[IPv4Net]:
    """Convert a registry (start, host count) record to CIDR blocks.

    An aligned power-of-two count yields a single /(32 - log2(hosts)). Any
    other record is summarized exactly, never rounded or masked down.
    """
    first = ipaddress.IPv4Address(start)
    last = first + (hosts - 1)
    return list(ipaddress.summarize_address_range(first, last))


def parse_delegated(text: str, countries: Iterable[str]) -> Dict[str, CountryRanges]:
    """Index allocated records for the wanted countries."""
    wanted = set(countries)
    index = {cc: CountryRanges(cc, Provider.RIPE) for cc in wanted}
    skipped = 0
    for line in text.splitlines():
        fields = line.split("|")
        if len(fields) < 7 or fields[1] not in wanted or fields[6] != "allocated":
            continue
        entry = index[fields[1]]
        kind, start, value = fields[2], fields[3], fields[4]
        try:
            if kind == "ipv4":
                hosts = int(value)
                if hosts <= 0 or hosts > 2 ** 32:
                    raise ValueError(f"bad host count {value}")
                entry.v4.extend(hosts_to_networks(start, hosts))
            elif kind == "ipv6":
                entry.v6.append(ipaddress.IPv6Network(f"{start}/{int(value)}", strict=False))
        except ValueError as e:
            skipped += 1
            logger.debug("Skipping malformed RIPE record %r: %s", line, e)
    if skipped:
        logger.warning("Skipped %d malformed RIPE records", skipped)
    return index


class RipeClient(ProviderClient):
    provider = Provider.RIPE
    hosts = ("ftp.ripe.net",)

    def __init__(self, fetcher: Fetcher, countries: Iterable[str]):
        super().__init__(fetcher)
        self.countries = sorted(set(countries))
        self._index: Dict[str, CountryRanges] = {}

    def prepare(self) -> None:
        """Download the delegated file once, verify it, index it. Fatal on failure."""
        logger.info("Downloading RIPE data file...")
        try:
            data = self.fetcher.get(RIPE_URL)
            md5_text = self.fetcher.get_text(RIPE_MD5_URL)
        except FetchError as e:
            raise IntegrityError(f"Failed to download RIPE data: {e}") from e

        expected = expected_md5(md5_text)
        if not expected:
            raise IntegrityError("MD5 not found in RIPE checksum file")
        computed = hashlib.md5(data).hexdigest()
        if computed != expected:
            raise IntegrityError(f"RIPE MD5 checksum mismatch (expected {expected}, got {computed}). "
                                 "File is corrupt or tampered with.")
        logger.info("Checksum OK. Parsing RIPE data for %s", ",".join(self.countries))
        self._index = parse_delegated(data.decode("utf-8", "ignore"), self.countries)

    def fetch(self, country: str) -> CountryRanges:
        entry = self._index.get(country)
        if entry is None:
            raise FetchError(f"RIPE data was not prepared for {country}")
        result = CountryRanges(country, self.provider,
                               v4=_drop_dangerous(entry.v4, f"IPv4 ({country}, RIPE)"),
                               v6=_drop_dangerous(entry.v6, f"IPv6 ({country}, RIPE)"))
        if result.is_empty():
            raise FetchError(f"No allocated RIPE records for {country}")
        return result


# ---------------- Nirsoft (per-country CSV, IPv4 only) ----------------
def parse_nirsoft_csv(text: str, country: str) -> List[AddressRange]:
    rows = [r for r in csv.reader(io.StringIO(text)) if r and any(c.strip() for c in r)]
    if not rows:
        raise FetchError(f"CSV file for {country} is empty")
    if len(rows[0]) < NIRSOFT_MIN_COLUMNS:
        raise FetchError(f"CSV file for {country} is not valid (less than {NIRSOFT_MIN_COLUMNS} columns)")

    ranges = []
    for row in rows:
        if len(row) < NIRSOFT_MIN_COLUMNS:
            continue
        try:
            start = ipaddress.IPv4Address(row[0].strip())
            end = ipaddress.IPv4Address(row[1].strip())
        except ValueError:
            continue
        if start > end:
            continue
        ranges.append((start, end))
    return ranges


class NirsoftClient(ProviderClient):
    provider = Provider.NIRSOFT
    hosts = ("www.nirsoft.net",)

    def fetch(self, country: str) -> CountryRanges:
        label = f"IPv4 ({country}, Nirsoft)"
        text = self.fetcher.get_text(NIRSOFT_URL.format(cc=country.lower()))
        ranges = parse_nirsoft_csv(text, country)
        if any(start.is_unspecified for start, _ in ranges):
            logger.error("DANGEROUS entry found in %s list. Discarding it.", label)
            ranges = []
        if not ranges:
            raise FetchError(f"No usable ranges in {label} list")
        return CountryRanges(country, self.provider, v4_ranges=ranges)


def make_clients(fetcher: Fetcher, countries: Dict[str, Provider]) -> Dict[Provider, ProviderClient]:
    """One client per provider actually referenced by the selection."""
    clients: Dict[Provider, ProviderClient] = {}
    for provider in set(countries.values()):
        if provider is Provider.IPDENY:
            clients[provider] = IpdenyClient(fetcher)
        elif provider is Provider.RIPE:
            clients[provider] = RipeClient(fetcher, [cc for cc, p in countries.items() if p is provider])
        else:
            clients[provider] = NirsoftClient(fetcher)
    return clients
