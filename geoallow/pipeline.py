"""One run end to end: preflight, acquire, optimize, compile, apply."""

import fcntl
import logging
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, TextIO, Union

from geoallow import iptables, nft
from geoallow.acquire import acquire, write_country_lists
from geoallow.apply import apply_legacy, apply_unified, forward_hook
from geoallow.backend import select_backend
from geoallow.blocklist import load_blocklist, refresh_blocklists
from geoallow.errors import GeoAllowError, LockError
from geoallow.fetch import Fetcher, check_connectivity
from geoallow.iptables import LegacyPlan
from geoallow.models import AllowSet, Backend, Settings
from geoallow.optimize import build_allowset
from geoallow.providers import make_clients
from geoallow.runner import CommandRunner

logger = logging.getLogger(__name__)

Compiled = Union[str, LegacyPlan]


@contextmanager
def run_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive, non-blocking flock on path for the duration."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(path, "a+")
    except OSError as e:
        raise LockError(f"Cannot open lock file {path}: {e}") from e
    try:
        try:
            fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            raise LockError(f"Another run is in progress (lock held on {path})") from e
        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()}\n")
        fh.flush()
        yield
    finally:
        fh.close()


def require_root(settings: Settings) -> None:
    if settings.dry_run:
        return
    if os.geteuid() != 0:
        raise GeoAllowError("This command must be run as root (use --dry-run to preview)")


def compile_rules(backend: Backend, runner: CommandRunner, settings: Settings, allow: AllowSet) -> Compiled:
    if backend is Backend.NFTABLES:
        return nft.compile_ruleset(settings, allow)
    hooks = {family: forward_hook(runner, family) for family in iptables.legacy_families(settings)}
    return iptables.compile_legacy(settings, allow, hooks)


def render_artifacts(compiled: Compiled) -> str:
    if isinstance(compiled, str):
        return compiled
    parts = ["# ipset restore", compiled.ipset_restore]
    for family in compiled.families:
        parts += [f"# {iptables.RESTORE_TOOLS[family]} --noflush", compiled.rule_files[family]]
    return "\n".join(parts)


def run(settings: Settings, runner: CommandRunner, fetcher: Fetcher,
        out: Optional[TextIO] = None) -> Backend:
    """Execute one run. Nothing is applied unless every earlier phase succeeded."""
    backend = select_backend(runner, settings)
    clients = make_clients(fetcher, settings.countries)

    if settings.check_connectivity:
        check_connectivity(sorted({h for c in clients.values() for h in c.hosts}))

    if settings.update_blocklists:
        if settings.dry_run:
            logger.info("[DRY RUN] Would refresh blocklists into %s", settings.block_dir)
        else:
            refresh_blocklists(settings.blocklist_index_url, settings.block_dir, fetcher)

    results = acquire(settings.countries, clients, settings.workers)
    if settings.dry_run:
        logger.info("[DRY RUN] Would write %d country lists to %s", len(results), settings.allow_dir)
    else:
        write_country_lists(results, settings.allow_dir)

    block = load_blocklist(settings.block_dir) if settings.use_blocklist else None
    allow = build_allowset(results, block, include_v6=settings.geo_ipv6)

    compiled = compile_rules(backend, runner, settings, allow)
    if settings.print_ruleset or settings.dry_run:
        (out or sys.stdout).write(render_artifacts(compiled))

    if isinstance(compiled, str):
        apply_unified(runner, compiled)
    else:
        apply_legacy(runner, compiled)
    return backend


def execute(settings: Settings, runner: CommandRunner, fetcher: Fetcher,
            out: Optional[TextIO] = None) -> Backend:
    """run() behind the root check and the run lock (dry runs skip both)."""
    require_root(settings)
    if settings.dry_run:
        return run(settings, runner, fetcher, out)
    with run_lock(settings.lock_file):
        return run(settings, runner, fetcher, out)
