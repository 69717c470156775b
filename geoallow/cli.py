"""Command line entry point."""

import argparse
import logging
from typing import List, Optional

from geoallow import __version__, pipeline
from geoallow.config import DEFAULT_CONF, build_settings, load_conf, validate_config
from geoallow.errors import GeoAllowError
from geoallow.fetch import Fetcher
from geoallow.runner import CommandRunner

logger = logging.getLogger("geoallow")

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="geoallow",
        description="Allow inbound traffic only from selected countries (nftables or iptables + ipset).")
    ap.add_argument("-c", "--countries", default=None,
                    help="Countries to allow: 'IT,FR' or 'ipdeny:IT,FR;ripe:DE' (default: COUNTRIES or IT).")
    ap.add_argument("-p", "--provider", default=None,
                    help="Default provider for countries without a prefix: ipdeny, ripe, nirsoft.")
    ap.add_argument("-b", "--blocklist", action="store_true",
                    help="Subtract the IPv4 blocklist from the allowlist.")
    ap.add_argument("--blocklist-dir", default=None, help="Blocklist directory (default: WORK_DIR/block).")
    ap.add_argument("--update-blocklists", action="store_true",
                    help="Refresh the blocklist directory from the index before building (implies -b).")
    v6 = ap.add_mutually_exclusive_group()
    v6.add_argument("-6", "--ipv6-geo", dest="ipv6_mode", action="store_const", const="geo",
                    help="Geo-filter IPv6 too (default: IPv6 left open).")
    v6.add_argument("--block-ipv6", dest="ipv6_mode", action="store_const", const="blocked",
                    help="Drop all inbound IPv6.")
    ap.add_argument("-s", "--ssh-port", type=int, default=None, help="SSH port (default 22).")
    ap.add_argument("--backend", choices=["auto", "nftables", "iptables"], default=None,
                    help="Force a backend (default: auto-detect).")
    ap.add_argument("--work-dir", default=None, help="Directory for per-country lists.")
    ap.add_argument("--workers", type=int, default=None, help="Parallel downloads (default 4).")
    ap.add_argument("--timeout", type=int, default=None, help="Per-request timeout in seconds (default 30).")
    ap.add_argument("--retries", type=int, default=None, help="Retries per download (default 2).")
    ap.add_argument("--lock-file", default=None, help="Run lock file (default /run/geoallow.lock).")
    ap.add_argument("--conf", default=DEFAULT_CONF, help="Config file.")
    ap.add_argument("--dry-run", action="store_true",
                    help="Compile and print the ruleset without changing the firewall.")
    ap.add_argument("--print", dest="print_ruleset", action="store_true",
                    help="Write the compiled ruleset to stdout.")
    ap.add_argument("--skip-connectivity-check", action="store_true",
                    help="Do not probe provider hosts before downloading.")
    ap.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging.")
    ap.add_argument("--quiet", "-q", action="store_true", help="Suppress non-error output.")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap


def setup_logging(verbose: bool, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logger.setLevel(level)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, args.quiet)

    try:
        settings = build_settings(args, load_conf(args.conf))
        for warning in validate_config(settings):
            logger.warning("Config warning: %s", warning)

        if settings.dry_run:
            logger.info("[DRY RUN MODE] No changes will be made to the firewall")
        logger.info("Countries: %s", ", ".join(f"{cc} ({p.value})" for cc, p in sorted(settings.countries.items())))

        runner = CommandRunner(dry_run=settings.dry_run, timeout=settings.timeout)
        fetcher = Fetcher(timeout=settings.timeout, max_retries=settings.max_retries)
        backend = pipeline.execute(settings, runner, fetcher)
    except GeoAllowError as e:
        logger.error("%s", e)
        return e.exit_code
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 130

    logger.info("Done (%s).", backend.value)
    return 0
