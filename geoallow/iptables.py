"""Legacy backend: ipset restore scripts + iptables-restore rule files.

The legacy tools have no cross-table atomic replace, so the plan is applied
in steps: sets are loaded into temporary sets and swapped in, chain contents
are replaced per family with ``iptables-restore --noflush``, and the jump
rules from the built-in chains are reconciled against what is installed.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from geoallow import mitigation
from geoallow.chains import (LOG_PREFIX_BLACKLIST, LOG_PREFIX_BRUTEFORCE, LOG_PREFIX_GEO_FORWARD,
                             LOG_PREFIX_GEO_INPUT, PRIVATE_NETWORKS_V4, PRIVATE_NETWORKS_V6, Step,
                             forward_steps, input_steps)
from geoallow.errors import InvariantError
from geoallow.models import AllowSet, Ipv6Mode, Settings
from geoallow.runner import CommandRunner

logger = logging.getLogger(__name__)

# ---------------- Names ----------------
SET_ALLOW = {4: "geoallow-allow4", 6: "geoallow-allow6"}
SET_PRIVATE = {4: "geoallow-private4", 6: "geoallow-private6"}
CHAIN_INPUT = "GEOALLOW-INPUT"
CHAIN_FORWARD = "GEOALLOW-FORWARD"
CHAIN_GEO_IN = "GEOALLOW-GEO-IN"
CHAIN_GEO_FWD = "GEOALLOW-GEO-FWD"
CHAIN_BL_DROP = "GEOALLOW-BL-DROP"
CHAIN_SSH_BAN = "GEOALLOW-SSH-BAN"
OWN_CHAINS = [CHAIN_INPUT, CHAIN_FORWARD, CHAIN_GEO_IN, CHAIN_GEO_FWD, CHAIN_BL_DROP, CHAIN_SSH_BAN]
HOOK_CHAINS = ["INPUT", "DOCKER-USER", "FORWARD"]

TOOLS = {4: "iptables", 6: "ip6tables"}
RESTORE_TOOLS = {4: "iptables-restore", 6: "ip6tables-restore"}
IPSET_FAMILY = {4: "inet", 6: "inet6"}
DEFAULT_HASH = "hash:net"
DEFAULT_HASHSIZE = 16384
# Constant: "create -exist" fails against a live set created with other options
DEFAULT_MAXELEM = 800000


@dataclass
class Jump:
    family: int
    chain: str
    target: str

    def spec(self) -> str:
        return f"-A {self.chain} -j {self.target}"


@dataclass
class LegacyPlan:
    ipset_restore: str
    rule_files: Dict[int, str] = field(default_factory=dict)
    jumps: List[Jump] = field(default_factory=list)

    @property
    def families(self) -> List[int]:
        return sorted(self.rule_files)


def legacy_families(settings: Settings) -> List[int]:
    return [4] if settings.ipv6_mode is Ipv6Mode.OPEN else [4, 6]


# ---------------- Restore writer ----------------
def set_block(name: str, family: int, entries: List[str]) -> List[str]:
    """Load one set atomically through a temporary set and a swap."""
    if len(entries) > DEFAULT_MAXELEM:
        raise InvariantError(f"Set {name} would hold {len(entries)} entries; the limit is {DEFAULT_MAXELEM}")
    tmp = f"{name}-tmp"
    opts = f"{DEFAULT_HASH} family {IPSET_FAMILY[family]} hashsize {DEFAULT_HASHSIZE} maxelem {DEFAULT_MAXELEM}"
    lines = [f"create {tmp} {opts} -exist", f"flush {tmp}"]
    lines += [f"add {tmp} {e}" for e in entries]
    lines += [f"create {name} {opts} -exist", f"swap {tmp} {name}", f"destroy {tmp}"]
    return lines


def write_ipset_restore(settings: Settings, allow: AllowSet) -> str:
    lines: List[str] = []
    for family in legacy_families(settings):
        private = PRIVATE_NETWORKS_V4 if family == 4 else PRIVATE_NETWORKS_V6
        lines += set_block(SET_PRIVATE[family], family, [str(n) for n in private])
        if family == 4 or settings.geo_ipv6:
            nets = allow.v4 if family == 4 else allow.v6
            lines += set_block(SET_ALLOW[family], family, [str(n) for n in nets])
    return "\n".join(lines) + "\n"


# ---------------- Rule files ----------------
def log_drop_chain(chain: str, prefix: str) -> List[str]:
    return [f'-A {chain} -j LOG --log-level 4 --log-prefix "{prefix}"', f"-A {chain} -j DROP"]


def render_step(step: Step, settings: Settings, family: int, hook: str) -> Optional[List[str]]:
    """Rule arguments for one step; [] when the step does not apply to this
    family, None when the step ends the chain."""
    policy = settings.mitigation
    port = settings.ssh_port
    accept = "ACCEPT" if hook == "input" else "RETURN"

    if step is Step.LOOPBACK_ACCEPT:
        return ["-i lo -j ACCEPT"]
    if step is Step.ESTABLISHED_ACCEPT:
        return [f"-m conntrack --ctstate RELATED,ESTABLISHED -j {accept}"]
    if step is Step.INVALID_DROP:
        return ["-m conntrack --ctstate INVALID -j DROP"]
    if step is Step.ICMP_ACCEPT:
        return ["-p icmp -j ACCEPT" if family == 4 else "-p ipv6-icmp -j ACCEPT"]
    if step is Step.PRIVATE_ACCEPT:
        return [f"-m set --match-set {SET_PRIVATE[family]} src -j {accept}"]
    if step is Step.ALLOW_MISS_DROP:
        if family == 6 and not settings.geo_ipv6:
            return []
        target = CHAIN_GEO_IN if hook == "input" else CHAIN_GEO_FWD
        return [f"-m set ! --match-set {SET_ALLOW[family]} src -j {target}"]
    if step is Step.IPV6_ACCEPT:
        return []  # IPv6 chains are not installed in open mode
    if step is Step.IPV6_DROP:
        return None if family == 6 else []
    if step is Step.BLACKLIST_DROP:
        return [" ".join(mitigation.recent_blacklist_check(policy) + ["-j", CHAIN_BL_DROP])]
    if step is Step.SSH_RATE_CHECK:
        return [" ".join(mitigation.recent_ssh_track(port)),
                " ".join(mitigation.recent_ssh_exceeded(policy, port) + ["-j", CHAIN_SSH_BAN])]
    if step is Step.SSH_ACCEPT:
        return [f"-p tcp --dport {port} -j ACCEPT"]
    if step is Step.DEFAULT_DROP:
        return None
    raise ValueError(f"Unhandled step {step}")


def chain_rules(chain: str, steps: List[Step], settings: Settings, family: int, hook: str) -> List[str]:
    rules: List[str] = []
    for step in steps:
        rendered = render_step(step, settings, family, hook)
        if rendered is None:
            rules.append(f"-A {chain} -j DROP")
            break
        rules += [f"-A {chain} {r}" for r in rendered]
    return rules


def write_rule_file(settings: Settings, family: int) -> str:
    lines = ["*filter"]
    lines += [f":{chain} - [0:0]" for chain in OWN_CHAINS]
    lines += log_drop_chain(CHAIN_GEO_IN, LOG_PREFIX_GEO_INPUT)
    lines += log_drop_chain(CHAIN_GEO_FWD, LOG_PREFIX_GEO_FORWARD)
    lines += log_drop_chain(CHAIN_BL_DROP, LOG_PREFIX_BLACKLIST)
    lines.append(f"-A {CHAIN_SSH_BAN} " + " ".join(mitigation.recent_blacklist_add()))
    lines += log_drop_chain(CHAIN_SSH_BAN, LOG_PREFIX_BRUTEFORCE)
    lines += chain_rules(CHAIN_INPUT, input_steps(settings), settings, family, "input")
    lines += chain_rules(CHAIN_FORWARD, forward_steps(settings), settings, family, "forward")
    lines.append("COMMIT")
    return "\n".join(lines) + "\n"


def compile_legacy(settings: Settings, allow: AllowSet,
                   forward_hooks: Optional[Dict[int, str]] = None) -> LegacyPlan:
    """Build the plan; forward_hooks maps family -> chain to hook the forward
    chain into (DOCKER-USER unless told otherwise)."""
    forward_hooks = forward_hooks or {}
    plan = LegacyPlan(ipset_restore=write_ipset_restore(settings, allow))
    for family in legacy_families(settings):
        plan.rule_files[family] = write_rule_file(settings, family)
        plan.jumps.append(Jump(family, "INPUT", CHAIN_INPUT))
        plan.jumps.append(Jump(family, forward_hooks.get(family, "DOCKER-USER"), CHAIN_FORWARD))
    return plan


# ---------------- Installed state ----------------
def installed_rules(runner: CommandRunner, family: int, chain: str) -> List[str]:
    """'-A CHAIN ...' lines currently in a built-in chain ([] if it does not exist)."""
    proc = runner.run([TOOLS[family], "-S", chain], check=False, mutating=False)
    if proc.returncode != 0:
        return []
    return [ln.strip() for ln in proc.stdout.splitlines() if ln.startswith(f"-A {chain} ")]


def chain_exists(runner: CommandRunner, family: int, chain: str) -> bool:
    return runner.succeeds([TOOLS[family], "-S", chain])


def reconcile_jump(runner: CommandRunner, jump: Jump) -> bool:
    """Make the jump appear exactly once, first in its chain. Returns True if changed."""
    tool = TOOLS[jump.family]
    rules = installed_rules(runner, jump.family, jump.chain)
    positions = [i for i, r in enumerate(rules) if r == jump.spec()]
    if positions == [0]:
        logger.debug("%s jump %s -> %s already in place", tool, jump.chain, jump.target)
        return False
    for _ in positions:
        runner.run([tool, "-D", jump.chain, "-j", jump.target])
    runner.run([tool, "-I", jump.chain, "1", "-j", jump.target])
    logger.info("%s jump %s -> %s %s", tool, jump.chain, jump.target,
                "re-inserted (removed %d stale)" % len(positions) if positions else "inserted")
    return True


def remove_jump(runner: CommandRunner, jump: Jump) -> int:
    count = installed_rules(runner, jump.family, jump.chain).count(jump.spec())
    for _ in range(count):
        runner.run([TOOLS[jump.family], "-D", jump.chain, "-j", jump.target])
    return count


def remove_jumps(runner: CommandRunner, family: int) -> int:
    """Delete every jump from a built-in chain into one of our chains."""
    removed = 0
    for chain in HOOK_CHAINS:
        for rule in installed_rules(runner, family, chain):
            parts = rule.split()
            if parts[-2:-1] == ["-j"] and parts[-1] in OWN_CHAINS:
                runner.run([TOOLS[family], "-D", chain] + parts[2:])
                removed += 1
    return removed


def teardown_family(runner: CommandRunner, family: int) -> None:
    """Remove all of our rules, chains and sets for one family, if present."""
    tool = TOOLS[family]
    if not runner.which(tool):
        return
    removed = remove_jumps(runner, family)
    for chain in OWN_CHAINS:
        if chain_exists(runner, family, chain):
            runner.run([tool, "-F", chain])
    for chain in OWN_CHAINS:
        if chain_exists(runner, family, chain):
            runner.run([tool, "-X", chain])
    if runner.which("ipset"):
        for name in (SET_ALLOW[family], SET_PRIVATE[family]):
            if runner.succeeds(["ipset", "list", "-n", name]):
                runner.run(["ipset", "destroy", name])
    if removed:
        logger.info("Removed %d %s jump rules", removed, tool)
