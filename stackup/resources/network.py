"""Virtual bridges and owner-tagged firewall rule sets."""

import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from stackup.resources.base import ResourceManager


FIREWALL_TABLES = ("filter", "nat")


class BridgeManager(ResourceManager):
    """Linux bridges managed with ``ip link``."""

    kind = "bridge"

    def exists(self, name: str) -> bool:
        result = self.runner.run(["ip", "link", "show", name], check=False)
        return result.returncode == 0

    def _destroy(self, name: str) -> None:
        self.runner.run(["ip", "link", "set", name, "down"], check=False, privileged=True)
        self.runner.run(["ip", "link", "delete", name, "type", "bridge"], privileged=True)

    def _create(self, name: str, spec: Any) -> Dict[str, Any]:
        self.runner.run(["ip", "link", "add", "name", name, "type", "bridge"], privileged=True)
        self.runner.run(["ip", "link", "set", name, "up"], privileged=True)
        return {"type": "linux-bridge"}


class OvsBridgeManager(ResourceManager):
    """Open vSwitch bridges managed with ``ovs-vsctl``."""

    kind = "ovs-bridge"

    def exists(self, name: str) -> bool:
        result = self.runner.run(["ovs-vsctl", "br-exists", name], check=False, privileged=True)
        return result.returncode == 0

    def _destroy(self, name: str) -> None:
        self.runner.run(["ovs-vsctl", "--no-wait", "--", "--if-exists", "del-br", name], privileged=True)

    def _create(self, name: str, spec: Any) -> Dict[str, Any]:
        self.runner.run(["ovs-vsctl", "--no-wait", "--", "--may-exist", "add-br", name], privileged=True)
        self.runner.run(
            ["ovs-vsctl", "--no-wait", "br-set-external-id", name, "bridge-id", name],
            privileged=True,
        )
        return {"type": "ovs-bridge"}


@dataclass(frozen=True)
class FirewallRule:
    """One rule appended to a chain; ``args`` excludes ``-A <chain>``."""

    chain: str
    args: Tuple[str, ...]
    table: str = "filter"


@dataclass(frozen=True)
class FirewallSpec:
    """Owner chains (by suffix) and rules to create."""

    chains: Tuple[Tuple[str, str], ...] = ()
    rules: Tuple[FirewallRule, ...] = field(default_factory=tuple)


def chain_name(owner: str, suffix: str) -> str:
    return f"{owner}-{suffix}"


def _is_owned(parts: List[str], owner: str) -> bool:
    prefix = f"{owner}-"
    if parts[0] == "-N":
        return len(parts) > 1 and parts[1].startswith(prefix)

    if parts[0] != "-A" or len(parts) < 2:
        return False
    if parts[1].startswith(prefix):
        return True
    for i, part in enumerate(parts[:-1]):
        following = parts[i + 1]
        if part in ("-j", "-g") and following.startswith(prefix):
            return True
        if part == "--comment" and following == owner:
            return True
    return False


def owned_rule_deletions(listing: str, owner: str) -> List[List[str]]:
    """
    Turn an ``iptables -S`` listing into the commands that remove owned entries.

    Only rules in an owner chain, jumping to an owner chain, or carrying
    ``--comment <owner>`` are deleted, along with the owner chains. Rules
    come first (``-A`` becomes ``-D``), then chains (``-N`` becomes ``-X``).

    Args:
        listing: Output of ``iptables -S`` for one table
        owner: Owner tag

    Returns:
        Argument lists to pass to ``iptables -t <table>``
    """
    rules: List[List[str]] = []
    chains: List[List[str]] = []

    for line in listing.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = shlex.split(line)
        if not _is_owned(parts, owner):
            continue
        if parts[0] == "-A":
            rules.append(["-D"] + parts[1:])
        else:
            chains.append(["-X", parts[1]])

    return rules + chains


class FirewallManager(ResourceManager):
    """
    The owner's iptables rule set across the filter and nat tables.

    Foreign rules, including ones that merely mention the owner string,
    are never touched.
    """

    kind = "firewall"

    def _listing(self, table: str) -> str:
        result = self.runner.run(["iptables", "-t", table, "-S"], privileged=True)
        return result.stdout

    def exists(self, name: str) -> bool:
        return any(
            owned_rule_deletions(self._listing(table), self.owner)
            for table in FIREWALL_TABLES
        )

    def _destroy(self, name: str) -> None:
        for table in FIREWALL_TABLES:
            for args in owned_rule_deletions(self._listing(table), self.owner):
                self.runner.run(["iptables", "-t", table] + args, privileged=True)

    def _create(self, name: str, spec: Any) -> Dict[str, Any]:
        spec = spec or FirewallSpec()
        for table, suffix in spec.chains:
            self.runner.run(
                ["iptables", "-t", table, "-N", chain_name(self.owner, suffix)],
                privileged=True,
            )
        for rule in spec.rules:
            self.runner.run(
                ["iptables", "-t", rule.table, "-A", rule.chain]
                + list(rule.args)
                + ["-m", "comment", "--comment", self.owner],
                privileged=True,
            )
        return {"chains": len(spec.chains), "rules": len(spec.rules)}
