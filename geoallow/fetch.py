"""HTTP downloads with bounded timeout and retry, plus a connectivity preflight."""

import http.client
import logging
import socket
import time
import urllib.error
import urllib.request
from typing import Iterable, List
from urllib.parse import urlparse

from geoallow.errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
DEFAULT_MAX_RETRIES = 2  # Total of 3 attempts
DEFAULT_RETRY_DELAYS = [1, 4]  # Exponential backoff in seconds
USER_AGENT = "geoallow"
CONNECTIVITY_ATTEMPTS = 3
CONNECTIVITY_DELAY = 5


class Fetcher:
    """Fetch URLs (or local paths) and return raw bytes.

    Raises FetchError once retries are exhausted; callers decide whether that
    skips one unit of work or aborts the run.
    """

    def __init__(self, timeout: int = DEFAULT_TIMEOUT, max_retries: int = DEFAULT_MAX_RETRIES,
                 retry_delays: List[int] = None):
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delays = retry_delays if retry_delays is not None else DEFAULT_RETRY_DELAYS

    def get(self, url: str) -> bytes:
        if "://" not in url or url.startswith("file://"):
            path = urlparse(url).path if url.startswith("file://") else url
            try:
                with open(path, "rb") as f:
                    return f.read()
            except OSError as e:
                raise FetchError(f"Failed to read {url}: {e}") from e

        req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
        last_error = None
        for attempt in range(self.max_retries + 1):
            try:
                # urllib verifies certificates by default
                with urllib.request.urlopen(req, timeout=self.timeout) as r:
                    return r.read()

            except urllib.error.HTTPError as e:
                # 4xx means the resource is not there; retrying will not help
                if 400 <= e.code < 500:
                    raise FetchError(f"HTTP {e.code} for {url}") from e
                last_error = e

            except urllib.error.URLError as e:
                # Certificate errors are never retried
                if "certificate" in str(e.reason).lower():
                    raise FetchError(f"SSL certificate verification failed for {url}: {e.reason}") from e
                last_error = e

            except (OSError, http.client.HTTPException) as e:
                # Timeouts, connection resets and truncated transfers
                last_error = e

            if attempt < self.max_retries:
                delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
                logger.debug("Failed to fetch %s (attempt %d/%d): %s. Retrying in %ds",
                             url, attempt + 1, self.max_retries + 1, last_error, delay)
                time.sleep(delay)

        raise FetchError(f"Failed to fetch {url} after {self.max_retries + 1} attempts: {last_error}")

    def get_text(self, url: str) -> str:
        return self.get(url).decode("utf-8", "ignore").replace("\r", "")


def check_connectivity(hosts: Iterable[str], timeout: int = 5,
                       attempts: int = CONNECTIVITY_ATTEMPTS, delay: int = CONNECTIVITY_DELAY) -> str:
    """Return the first host reachable on port 443; raise FetchError if none is."""
    hosts = list(hosts)
    for attempt in range(1, attempts + 1):
        for host in hosts:
            try:
                with socket.create_connection((host, 443), timeout=timeout):
                    logger.info("Connectivity check passed with %s", host)
                    return host
            except OSError as e:
                logger.debug("Cannot reach %s: %s", host, e)
        if attempt < attempts:
            logger.warning("Connectivity check failed (%d/%d). Retrying in %ds", attempt, attempts, delay)
            time.sleep(delay)
    raise FetchError(f"No connectivity to any of: {', '.join(hosts)}")
