"""Fan per-country downloads out to a worker pool and collect the results."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Tuple

from geoallow.errors import FetchError, InvariantError
from geoallow.models import CountryRanges, Provider
from geoallow.providers import ProviderClient

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4


def acquire(countries: Dict[str, Provider], clients: Dict[Provider, ProviderClient],
            workers: int = DEFAULT_WORKERS) -> List[CountryRanges]:
    """Download every requested country; return the successful results.

    Provider preparation (bulk downloads, checksums) happens first and its
    errors propagate. Per-country failures are logged and skipped. Raises
    InvariantError when nothing at all was acquired.
    """
    for provider in sorted(clients, key=lambda p: p.value):
        logger.info("Using provider: %s", provider.value)
        clients[provider].prepare()

    results: List[CountryRanges] = []
    failures: List[Tuple[str, str]] = []
    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        futures = {
            executor.submit(clients[provider].fetch, cc): cc
            for cc, provider in sorted(countries.items())
        }
        for future in as_completed(futures):
            cc = futures[future]
            try:
                ranges = future.result()
            except FetchError as e:
                logger.warning("Skipping %s: %s", cc, e)
                failures.append((cc, str(e)))
                continue
            logger.info("Downloaded %s (%s): v4=%d, v4-ranges=%d, v6=%d", cc, ranges.provider.value,
                        len(ranges.v4), len(ranges.v4_ranges), len(ranges.v6))
            results.append(ranges)

    results.sort(key=lambda r: r.country)
    if not results:
        raise InvariantError("Download failed: no Geo-IP list could be generated (provider unreachable?). "
                             "Aborting to preserve the existing firewall rules.")
    if failures:
        logger.warning("%d of %d countries failed: %s", len(failures), len(countries),
                       ", ".join(cc for cc, _ in sorted(failures)))
    return results


def write_country_lists(results: List[CountryRanges], allow_dir: Path) -> int:
    """Regenerate <cc>.list.v4 / <cc>.list.v6 under allow_dir. Returns files written."""
    allow_dir.mkdir(parents=True, exist_ok=True)
    for old in list(allow_dir.glob("*.list.v4")) + list(allow_dir.glob("*.list.v6")):
        old.unlink()

    written = 0
    for r in results:
        cc = r.country.lower()
        v4_lines = [str(n) for n in r.v4] + [f"{s} - {e}" for s, e in r.v4_ranges]
        for suffix, lines in (("v4", v4_lines), ("v6", [str(n) for n in r.v6])):
            if not lines:
                continue
            path = allow_dir / f"{cc}.list.{suffix}"
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text("\n".join(lines) + "\n", encoding="utf-8")
            tmp.replace(path)
            written += 1
    logger.debug("Wrote %d country list files to %s", written, allow_dir)
    return written
