"""Pick the packet-filter backend installed on this host."""

import logging
from typing import List, Optional

from geoallow.errors import BackendNotFoundError
from geoallow.models import Backend, Ipv6Mode, Settings
from geoallow.runner import CommandRunner

logger = logging.getLogger(__name__)

UNIFIED_TOOLS = ["nft"]
LEGACY_TOOLS = ["iptables", "iptables-restore", "ipset"]
LEGACY_V6_TOOLS = ["ip6tables", "ip6tables-restore"]


def missing_tools(runner: CommandRunner, tools: List[str]) -> List[str]:
    return [t for t in tools if not runner.which(t)]


def legacy_requirements(settings: Settings) -> List[str]:
    # v6 chains are only installed when IPv6 is geo-blocked or blocked
    if settings.ipv6_mode is Ipv6Mode.OPEN:
        return LEGACY_TOOLS
    return LEGACY_TOOLS + LEGACY_V6_TOOLS


def select_backend(runner: CommandRunner, settings: Settings) -> Backend:
    """nftables when available, otherwise iptables + ipset; fatal if neither."""
    forced: Optional[Backend] = settings.backend
    if forced is Backend.NFTABLES or forced is None:
        missing = missing_tools(runner, UNIFIED_TOOLS)
        if not missing:
            logger.info("Using backend: nftables")
            return Backend.NFTABLES
        if forced is Backend.NFTABLES:
            raise BackendNotFoundError("nftables backend requested but 'nft' is not installed")

    missing = missing_tools(runner, legacy_requirements(settings))
    if missing:
        raise BackendNotFoundError(f"No usable packet-filter backend: 'nft' not found and missing "
                                   f"legacy commands: {', '.join(missing)}")
    logger.info("Using backend: iptables + ipset")
    return Backend.IPTABLES
