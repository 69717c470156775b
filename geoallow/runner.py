"""External command execution (nft, iptables, ipset), mockable in tests."""

import logging
import shutil
import subprocess
import time
from typing import List, Optional, Sequence

from geoallow.errors import CommandError

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30
DEFAULT_RETRY_DELAYS = [1, 4]


class CommandRunner:
    """Runs packet-filter tools with a timeout and an optional retry count.

    With dry_run=True, commands that change state are logged and skipped;
    read-only probes (mutating=False) still run so plans reflect the host.
    """

    def __init__(self, dry_run: bool = False, timeout: int = DEFAULT_COMMAND_TIMEOUT):
        self.dry_run = dry_run
        self.timeout = timeout

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def run(self, args: Sequence[str], input: Optional[str] = None, check: bool = True,
            retries: int = 0, mutating: bool = True) -> subprocess.CompletedProcess:
        args = [str(a) for a in args]
        if self.dry_run and mutating:
            logger.info("[DRY RUN] Would run: %s", " ".join(args))
            return subprocess.CompletedProcess(args, 0, "", "")

        for attempt in range(retries + 1):
            try:
                proc = self._execute(args, input)
            except subprocess.TimeoutExpired:
                proc = subprocess.CompletedProcess(args, 124, "", f"timed out after {self.timeout}s")
            except OSError as e:
                proc = subprocess.CompletedProcess(args, 127, "", str(e))
            if proc.returncode == 0 or attempt == retries:
                break
            delay = DEFAULT_RETRY_DELAYS[min(attempt, len(DEFAULT_RETRY_DELAYS) - 1)]
            logger.debug("Command failed (%d): %s. Retrying in %ds",
                         proc.returncode, " ".join(args), delay)
            time.sleep(delay)

        if check and proc.returncode != 0:
            raise CommandError(args, proc.returncode, proc.stderr)
        return proc

    def succeeds(self, args: Sequence[str]) -> bool:
        """True if a read-only probe exits 0."""
        return self.run(args, check=False, mutating=False).returncode == 0

    def output(self, args: Sequence[str]) -> str:
        return self.run(args, mutating=False).stdout

    def _execute(self, args: List[str], input: Optional[str]) -> subprocess.CompletedProcess:
        return subprocess.run(args, input=input, capture_output=True, text=True,
                              timeout=self.timeout, check=False)
