"""Apply a compiled ruleset and remove the other backend's leftovers."""

import logging
import tempfile
from pathlib import Path

from geoallow import iptables
from geoallow.errors import InvariantError
from geoallow.iptables import RESTORE_TOOLS, LegacyPlan
from geoallow.nft import TABLE_FAMILY, TABLE_NAME
from geoallow.runner import CommandRunner

logger = logging.getLogger(__name__)


def unified_table_exists(runner: CommandRunner) -> bool:
    return bool(runner.which("nft")) and runner.succeeds(["nft", "list", "table", TABLE_FAMILY, TABLE_NAME])


def remove_unified(runner: CommandRunner) -> bool:
    if not unified_table_exists(runner):
        return False
    runner.run(["nft", "delete", "table", TABLE_FAMILY, TABLE_NAME])
    logger.info("Removed previous nftables table %s %s", TABLE_FAMILY, TABLE_NAME)
    return True


def remove_legacy(runner: CommandRunner) -> None:
    for family in (4, 6):
        iptables.teardown_family(runner, family)


def apply_unified(runner: CommandRunner, document: str) -> None:
    """Check, clear legacy leftovers, then replace the table in one transaction."""
    with tempfile.TemporaryDirectory(prefix="geoallow-") as tmpdir:
        path = Path(tmpdir) / "geoallow.nft"
        path.write_text(document, encoding="utf-8")

        # Nothing is touched until the tool has accepted the document
        runner.run(["nft", "-c", "-f", str(path)])
        remove_legacy(runner)
        runner.run(["nft", "-f", str(path)])

    if not runner.dry_run:
        runner.output(["nft", "list", "table", TABLE_FAMILY, TABLE_NAME])
    logger.info("Applied nftables table %s %s", TABLE_FAMILY, TABLE_NAME)


def apply_legacy(runner: CommandRunner, plan: LegacyPlan) -> None:
    """Load sets, test and load rule files, reconcile jumps, verify."""
    runner.run(["ipset", "restore"], input=plan.ipset_restore)
    logger.info("Loaded ipsets (%d lines)", len(plan.ipset_restore.splitlines()))

    with tempfile.TemporaryDirectory(prefix="geoallow-") as tmpdir:
        paths = {}
        for family, text in plan.rule_files.items():
            paths[family] = Path(tmpdir) / f"geoallow.rules.v{family}"
            paths[family].write_text(text, encoding="utf-8")
            runner.run([RESTORE_TOOLS[family], "--test", "--noflush", str(paths[family])])

        remove_unified(runner)
        # Not atomic across families: v4 is live before v6 is loaded
        for family in plan.families:
            runner.run([RESTORE_TOOLS[family], "--noflush", str(paths[family])])
            logger.info("Loaded %s rule file", RESTORE_TOOLS[family])

    for jump in plan.jumps:
        iptables.reconcile_jump(runner, jump)
        if jump.target == iptables.CHAIN_FORWARD:
            # The forward hook may have moved between FORWARD and DOCKER-USER
            for chain in ("DOCKER-USER", "FORWARD"):
                if chain != jump.chain:
                    iptables.remove_jump(runner, iptables.Jump(jump.family, chain, jump.target))
    if 6 not in plan.families:
        iptables.teardown_family(runner, 6)

    if not runner.dry_run:
        verify_jumps(runner, plan)


def verify_jumps(runner: CommandRunner, plan: LegacyPlan) -> None:
    for jump in plan.jumps:
        count = iptables.installed_rules(runner, jump.family, jump.chain).count(jump.spec())
        if count != 1:
            raise InvariantError(f"{iptables.TOOLS[jump.family]} chain {jump.chain} has {count} jumps to "
                                 f"{jump.target} after apply (expected 1)")


def forward_hook(runner: CommandRunner, family: int) -> str:
    """DOCKER-USER when the container engine created it, FORWARD otherwise."""
    if iptables.chain_exists(runner, family, "DOCKER-USER"):
        return "DOCKER-USER"
    return "FORWARD"

