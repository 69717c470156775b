"""Conf-file parsing and Settings construction (command line overrides conf)."""

import argparse
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

from geoallow.errors import ConfigError
from geoallow.mitigation import RECENT_MAX_HITCOUNT
from geoallow.models import (Backend, BruteForcePolicy, Ipv6Mode, Provider, Settings,
                             parse_country_selection)

logger = logging.getLogger(__name__)

DEFAULT_CONF = "/etc/geoallow/geoallow.conf"
DEFAULT_COUNTRIES = "IT"

CONF_LINE = re.compile(r'^\s*([A-Z][A-Z0-9_]*)\s*=\s*(.*?)\s*$')
KNOWN_KEYS = {
    "COUNTRIES", "PROVIDER", "SSH_PORT", "USE_BLOCKLIST", "BLOCKLIST_DIR", "BLOCKLIST_INDEX_URL",
    "IPV6_MODE", "BACKEND", "WORK_DIR", "WORKERS", "TIMEOUT", "MAX_RETRIES", "SSH_HITCOUNT",
    "SSH_WINDOW", "BLACKLIST_TIMEOUT", "LOCK_FILE",
}
BACKEND_NAMES = {"auto": None, "nftables": Backend.NFTABLES, "iptables": Backend.IPTABLES}


def load_conf(path: Optional[str]) -> Dict[str, str]:
    """
    Read KEY=VALUE lines (shell style; quotes and trailing comments allowed).
    A missing file yields an empty dict.
    """
    cfg: Dict[str, str] = {}
    if not path or not Path(path).is_file():
        if path and path != DEFAULT_CONF:
            logger.warning("Config file %s not found; using defaults", path)
        return cfg
    with open(path, "r", encoding="utf-8", errors="ignore") as f:
        for ln in f:
            m = CONF_LINE.match(ln)
            if not m:
                continue
            key, value = m.group(1), m.group(2)
            if not value.startswith(("'", '"')):
                value = value.split("#")[0].strip()
            value = value.strip('"').strip("'")
            if key not in KNOWN_KEYS:
                logger.debug("Ignoring unknown config key %s", key)
                continue
            cfg[key] = value
    return cfg


def _int(value, name: str, low: int, high: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got '{value}'") from None
    if not low <= n <= high:
        raise ConfigError(f"{name} must be between {low} and {high}, got {n}")
    return n


def _bool(value: str) -> bool:
    return str(value).strip().lower() in ("yes", "true", "1", "on")


def _pick(arg, conf: Dict[str, str], key: str, default):
    if arg is not None:
        return arg
    return conf.get(key, default)


def build_settings(args: argparse.Namespace, conf: Dict[str, str]) -> Settings:
    provider = Provider.parse(_pick(args.provider, conf, "PROVIDER", Provider.IPDENY.value))
    countries = parse_country_selection(_pick(args.countries, conf, "COUNTRIES", DEFAULT_COUNTRIES), provider)

    ipv6_name = args.ipv6_mode or conf.get("IPV6_MODE", Ipv6Mode.OPEN.value)
    try:
        ipv6_mode = Ipv6Mode(ipv6_name.lower())
    except ValueError:
        raise ConfigError(f"Invalid IPV6_MODE '{ipv6_name}' (open, geo, blocked)") from None

    backend_name = _pick(args.backend, conf, "BACKEND", "auto").lower()
    if backend_name not in BACKEND_NAMES:
        raise ConfigError(f"Invalid backend '{backend_name}' (auto, nftables, iptables)")

    use_blocklist = args.blocklist or _bool(conf.get("USE_BLOCKLIST", "no"))
    blocklist_dir = _pick(args.blocklist_dir, conf, "BLOCKLIST_DIR", None)

    settings = Settings(
        countries=countries,
        ssh_port=_int(_pick(args.ssh_port, conf, "SSH_PORT", 22), "SSH port", 1, 65535),
        use_blocklist=use_blocklist or args.update_blocklists,
        update_blocklists=args.update_blocklists,
        ipv6_mode=ipv6_mode,
        backend=BACKEND_NAMES[backend_name],
        work_dir=Path(_pick(args.work_dir, conf, "WORK_DIR", "/var/lib/geoallow")),
        blocklist_dir=Path(blocklist_dir) if blocklist_dir else None,
        workers=_int(_pick(args.workers, conf, "WORKERS", 4), "WORKERS", 1, 64),
        timeout=_int(_pick(args.timeout, conf, "TIMEOUT", 30), "TIMEOUT", 1, 3600),
        max_retries=_int(_pick(args.retries, conf, "MAX_RETRIES", 2), "MAX_RETRIES", 0, 10),
        mitigation=BruteForcePolicy(
            hitcount=_int(conf.get("SSH_HITCOUNT", 10), "SSH_HITCOUNT", 1, RECENT_MAX_HITCOUNT - 1),
            window=_int(conf.get("SSH_WINDOW", 10), "SSH_WINDOW", 1, 86400),
            blacklist_timeout=_int(conf.get("BLACKLIST_TIMEOUT", 3600), "BLACKLIST_TIMEOUT", 1, 30 * 86400),
        ),
        lock_file=Path(_pick(args.lock_file, conf, "LOCK_FILE", "/run/geoallow.lock")),
        dry_run=args.dry_run,
        print_ruleset=args.print_ruleset,
        check_connectivity=not args.skip_connectivity_check,
    )
    if "BLOCKLIST_INDEX_URL" in conf:
        settings.blocklist_index_url = conf["BLOCKLIST_INDEX_URL"]
    return settings


def validate_config(settings: Settings) -> List[str]:
    """Return a list of warnings for settings that are legal but suspicious."""
    warnings = []
    if settings.workers > 16:
        warnings.append(f"WORKERS={settings.workers} may get rate-limited by providers")
    if settings.timeout < 5:
        warnings.append(f"TIMEOUT may be too short: {settings.timeout}s")
    policy = settings.mitigation
    if policy.blacklist_timeout < policy.window:
        warnings.append(f"BLACKLIST_TIMEOUT ({policy.blacklist_timeout}s) is shorter than "
                        f"SSH_WINDOW ({policy.window}s)")
    if settings.use_blocklist and not settings.update_blocklists and not settings.block_dir.is_dir():
        warnings.append(f"Blocklist enabled but {settings.block_dir} does not exist")
    if settings.ipv6_mode is Ipv6Mode.GEO and all(p is Provider.NIRSOFT for p in settings.countries.values()):
        warnings.append("IPv6 geo-blocking with only Nirsoft countries: the IPv6 allowlist will be empty")
    return warnings
