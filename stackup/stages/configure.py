"""
Per-service configuration and the host resources it depends on.

Old firewall rules and hypervisor instances are removed. Compute state
directories, bridges, the object storage disk and its rings are
recreated. Then every enabled service gets its config rendered.
"""

import os
from pathlib import Path
from typing import Any, Dict, List

from stackup.resources.loopback import LoopbackSpec
from stackup.resources.ring import RING_PORTS, RingSpec, zone_devices
from stackup.services import Service
from stackup.stages.base import Stage


# Services whose networking rewrites the owner's firewall rules
FIREWALL_SERVICES = (Service.NOVA_COMPUTE, Service.NOVA_NETWORK, Service.QUANTUM_DHCP)

# Services that leave dnsmasq processes and network state behind
NETWORK_STATE_SERVICES = (Service.NOVA_NETWORK, Service.QUANTUM_DHCP)


class ConfigureStage(Stage):
    name = "configure"

    def execute(self) -> Dict[str, Any]:
        managers = self.context.managers
        network = self.config.network

        if self.selection.is_enabled(*FIREWALL_SERVICES):
            self.context.record(managers["firewall"].ensure_absent(self.config.owner_tag))

        if self.selection.is_enabled(Service.NOVA_COMPUTE):
            self._reset_compute()

        if self.selection.is_enabled(*NETWORK_STATE_SERVICES):
            self._reset_network_state()

        if self.selection.is_enabled(Service.NOVA_NETWORK):
            self.context.record(
                managers["bridge"].ensure_present(network.flat_network_bridge)
            )

        if self.selection.is_enabled(Service.QUANTUM_AGENT):
            self.context.record(managers["ovs"].ensure_present(network.ovs_bridge))

        if self.selection.is_enabled(Service.SWIFT):
            self._configure_object_storage()

        rendered: List[str] = []
        for service in self.selection:
            if self.context.collaborators.render_config(service, self.selection):
                rendered.append(service.value)

        return {"rendered": rendered, "resources": sorted(self.context.resources)}

    def _reset_compute(self) -> None:
        """Remove the owner's old hypervisor instances and their disks."""
        compute = self.config.compute
        managers = self.context.managers
        self.context.record(managers["instances"].ensure_absent(compute.instance_name_prefix))
        self.context.record(managers["state_dir"].ensure_present(str(compute.instances_dir)))

    def _reset_network_state(self) -> None:
        runner = self.context.runner
        runner.run(["killall", "dnsmasq"], check=False, privileged=True)
        self.context.record(
            self.context.managers["state_dir"].ensure_present(str(self.config.compute.networks_dir))
        )
        runner.run(["sysctl", "-w", "net.ipv4.ip_forward=1"], privileged=True)

    def _configure_object_storage(self) -> None:
        storage = self.config.storage
        managers = self.context.managers

        self.context.record(
            managers["loopback"].ensure_present(
                str(storage.image_path),
                LoopbackSpec(
                    size=storage.loopback_size,
                    mount_options=storage.mount_options,
                ),
            )
        )

        for zone in range(1, storage.replicas + 1):
            drive = storage.mount_point / str(zone)
            (drive / "node" / "sdb1").mkdir(parents=True, exist_ok=True)
            _replace_symlink(storage.data_dir / str(zone), drive)

        ip = self.config.network.host_ip or "127.0.0.1"
        for ring_name, base_port in RING_PORTS.items():
            spec = RingSpec(
                part_power=storage.partition_power,
                replicas=storage.replicas,
                devices=tuple(zone_devices(storage.replicas, base_port, ip)),
            )
            self.context.record(managers["ring"].ensure_present(ring_name, spec))


def _replace_symlink(link: Path, target: Path) -> None:
    if link.is_symlink() or link.exists():
        link.unlink()
    link.parent.mkdir(parents=True, exist_ok=True)
    os.symlink(target, link)
