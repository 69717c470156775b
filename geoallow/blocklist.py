"""Optional IPv4 blocklist: refresh from an index of URLs, load from a directory."""

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import List
from urllib.parse import urlparse

from geoallow.errors import FetchError
from geoallow.fetch import Fetcher
from geoallow.models import IPv4Net
from geoallow.parsing import parse_entry

logger = logging.getLogger(__name__)

BLOCKLIST_WORKERS = 8
ALLOWED_SCHEMES = ("http", "https")


def list_filename(url: str) -> str:
    """Stable per-URL file name: <basename>-<8 hex chars of sha1(url)>."""
    base = Path(urlparse(url).path).name or "list"
    return f"{base}-{hashlib.sha1(url.encode('utf-8')).hexdigest()[:8]}"


def index_urls(index: str) -> List[str]:
    """http(s) URLs named by an index file; anything else is ignored."""
    urls = []
    for ln in index.splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#"):
            continue
        if urlparse(ln).scheme not in ALLOWED_SCHEMES:
            logger.warning("Ignoring blocklist index entry that is not an http(s) URL: %s", ln)
            continue
        urls.append(ln)
    return urls


def prune_blocklists(block_dir: Path, urls: List[str]) -> int:
    """Remove files in block_dir that belong to no URL of the current index."""
    keep = {list_filename(url) for url in urls}
    removed = 0
    for path in sorted(block_dir.iterdir()):
        if path.is_file() and path.name not in keep:
            logger.info("Removing stale blocklist %s", path.name)
            path.unlink()
            removed += 1
    return removed


def refresh_blocklists(index_url: str, block_dir: Path, fetcher: Fetcher,
                       workers: int = BLOCKLIST_WORKERS) -> int:
    """Download every list named in the index into block_dir.

    The index is authoritative: files for lists it no longer names are
    removed. A listed URL that fails keeps its previous copy. Returns the
    number refreshed.
    """
    try:
        index = fetcher.get_text(index_url)
    except FetchError as e:
        logger.warning("Failed to download blocklist index: %s. Using existing lists.", e)
        return 0

    urls = index_urls(index)
    if not urls:
        logger.warning("Blocklist index %s names no lists. Using existing lists.", index_url)
        return 0
    block_dir.mkdir(parents=True, exist_ok=True)

    def download(url: str) -> Path:
        logger.info("Downloading: %s", url)
        data = fetcher.get(url)
        path = block_dir / list_filename(url)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)
        return path

    refreshed = 0
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(download, url): url for url in urls}
        for future in as_completed(futures):
            try:
                future.result()
                refreshed += 1
            except (FetchError, OSError) as e:
                logger.warning("Blocklist %s not refreshed: %s", futures[future], e)
    prune_blocklists(block_dir, urls)
    logger.info("Refreshed %d/%d blocklists", refreshed, len(urls))
    return refreshed


def load_blocklist(block_dir: Path) -> List[IPv4Net]:
    """IPv4 networks from every regular file in block_dir (v6 entries ignored)."""
    if not block_dir.is_dir():
        logger.warning("Blocklist directory %s does not exist", block_dir)
        return []
    nets: List[IPv4Net] = []
    ignored_v6 = 0
    for path in sorted(block_dir.iterdir()):
        if not path.is_file() or path.name.endswith(".tmp"):
            continue
        with open(path, "r", encoding="utf-8", errors="ignore") as f:
            for ln in f:
                n = parse_entry(ln)
                if n is None:
                    continue
                if n.version == 4:
                    nets.append(n)
                else:
                    ignored_v6 += 1
    if ignored_v6:
        logger.debug("Ignored %d IPv6 blocklist entries", ignored_v6)
    logger.info("Blocklist entries: %d", len(nets))
    return nets
