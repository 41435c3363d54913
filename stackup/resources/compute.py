"""Hypervisor instances and compute state left behind by earlier runs."""

import os
import re
from pathlib import Path
from typing import Any, Dict, List

from stackup.errors import ResourceLifecycleError
from stackup.resources.base import ResourceManager


class InstanceManager(ResourceManager):
    """
    Hypervisor domains carrying the owner's instance name prefix.

    The resource name is the prefix. Only domains named ``<prefix><hex>``
    are touched; the compute service creates them, so this manager only
    removes them.
    """

    kind = "instances"

    def list_instances(self, prefix: str) -> List[str]:
        result = self.runner.run(["virsh", "list", "--all", "--name"], check=False, privileged=True)
        if result.returncode != 0:
            self.logger.warning(
                f"Could not list hypervisor domains: {result.stderr.strip()}",
                extra={"event": "instances_unlisted", "resource": str(self.key(prefix))},
            )
            return []
        pattern = re.compile(rf"^{re.escape(prefix)}[0-9a-fA-F]*$")
        return [line.strip() for line in result.stdout.splitlines() if pattern.match(line.strip())]

    def exists(self, name: str) -> bool:
        return bool(self.list_instances(name))

    def _destroy(self, name: str) -> None:
        for domain in self.list_instances(name):
            # A domain that is already shut off cannot be destroyed.
            self.runner.run(["virsh", "destroy", domain], check=False, privileged=True)
            self.runner.run(["virsh", "undefine", domain], privileged=True)
            self.logger.info(
                f"Removed instance {domain}",
                extra={"event": "instance_removed", "resource": str(self.key(name))},
            )

    def _create(self, name: str, spec: Any) -> Dict[str, Any]:
        raise ResourceLifecycleError(str(self.key(name)), "instances are created by the compute service")


class StateDirectoryManager(ResourceManager):
    """
    A state directory emptied and recreated on every run.

    The resource name is the directory path. A directory that is a mount
    point keeps existing; only its contents are removed.
    """

    kind = "state-dir"

    def exists(self, name: str) -> bool:
        return Path(name).exists()

    def _destroy(self, name: str) -> None:
        path = Path(name)
        if os.path.ismount(path):
            children = sorted(str(child) for child in path.iterdir())
            if children:
                self.runner.run(["rm", "-rf", "--"] + children, privileged=True)
        else:
            self.runner.run(["rm", "-rf", "--", str(path)], privileged=True)

    def _create(self, name: str, spec: Any) -> Dict[str, Any]:
        path = Path(name)
        path.mkdir(parents=True, exist_ok=True)
        return {"path": str(path)}
