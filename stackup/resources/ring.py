"""
Storage partition ring.

A ring maps each of 2**part_power partitions to ``replicas`` distinct
devices. Placement is a pure function of (part_power, replicas, devices):
the same inputs always give the same table, and device loads never differ
by more than one slot.

Rebalancing against a new device list keeps every existing placement
except the ones that have to move: slots on removed devices, and the
surplus of devices that are over their share. When the only devices with
room already hold a partition, one slot elsewhere is swapped to make space.
"""

import json
import struct
from dataclasses import dataclass
from hashlib import md5
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from stackup.errors import ResourceLifecycleError
from stackup.resources.base import ResourceManager


# Base port per ring; each replica zone adds 10
RING_PORTS = {"object": 6010, "container": 6011, "account": 6012}


@dataclass(frozen=True)
class Ring:
    part_power: int
    replicas: int
    devices: Tuple[str, ...]
    # assignments[replica][partition] -> device
    assignments: Tuple[Tuple[str, ...], ...]

    @property
    def partition_count(self) -> int:
        return 1 << self.part_power

    def get_nodes(self, partition: int) -> Tuple[str, ...]:
        """Devices holding a partition, one per replica."""
        return tuple(row[partition] for row in self.assignments)

    def partition_for(self, path: str) -> int:
        """Partition of a name: the top part_power bits of its md5."""
        digest = md5(path.encode("utf-8")).digest()
        return struct.unpack_from(">I", digest)[0] >> (32 - self.part_power)

    def device_loads(self) -> Dict[str, int]:
        loads = {device: 0 for device in self.devices}
        for row in self.assignments:
            for device in row:
                loads[device] += 1
        return loads

    def to_dict(self) -> Dict[str, Any]:
        return {
            "part_power": self.part_power,
            "replicas": self.replicas,
            "devices": list(self.devices),
            "assignments": [list(row) for row in self.assignments],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ring":
        return cls(
            part_power=int(data["part_power"]),
            replicas=int(data["replicas"]),
            devices=tuple(data["devices"]),
            assignments=tuple(tuple(row) for row in data["assignments"]),
        )


def _check_inputs(part_power: int, replicas: int, devices: Sequence[str]) -> None:
    if part_power < 0:
        raise ValueError(f"part_power must not be negative, got {part_power}")
    if replicas < 1:
        raise ValueError(f"replicas must be at least 1, got {replicas}")
    if len(set(devices)) != len(devices):
        raise ValueError("device list contains duplicates")
    if replicas > len(devices):
        raise ValueError(
            f"{replicas} replicas need at least {replicas} devices, got {len(devices)}"
        )


def _quotas(counts: Dict[str, int], devices: Sequence[str], total: int) -> Dict[str, int]:
    """Share of slots per device; the extra slots go to the most loaded devices."""
    base, extra = divmod(total, len(devices))
    order = {device: i for i, device in enumerate(devices)}
    ranked = sorted(devices, key=lambda d: (-counts[d], order[d]))
    return {device: base + (1 if i < extra else 0) for i, device in enumerate(ranked)}


def _balance(part_power: int, replicas: int, devices: Tuple[str, ...], table: List[List[Optional[str]]]) -> Ring:
    parts = 1 << part_power
    order = {device: i for i, device in enumerate(devices)}

    for row in table:
        for p, device in enumerate(row):
            if device is not None and device not in order:
                row[p] = None

    counts = {device: 0 for device in devices}
    for row in table:
        for device in row:
            if device is not None:
                counts[device] += 1
    quotas = _quotas(counts, devices, parts * replicas)

    # Shed surplus at most one slot per partition per pass, so freed
    # slots spread across partitions instead of emptying a few.
    while any(counts[d] > quotas[d] for d in devices):
        for p in reversed(range(parts)):
            candidates = [
                r for r in range(replicas)
                if table[r][p] is not None and counts[table[r][p]] > quotas[table[r][p]]
            ]
            if not candidates:
                continue
            r = max(candidates, key=lambda r: (counts[table[r][p]] - quotas[table[r][p]], -order[table[r][p]]))
            counts[table[r][p]] -= 1
            table[r][p] = None

    for p in range(parts):
        for r in range(replicas):
            if table[r][p] is None:
                _fill(p, r, table, devices, counts, quotas, order)

    return Ring(
        part_power=part_power,
        replicas=replicas,
        devices=devices,
        assignments=tuple(tuple(row) for row in table),
    )


def _fill(p: int, r: int, table, devices, counts, quotas, order) -> None:
    used = {row[p] for row in table if row[p] is not None}
    candidates = [d for d in devices if counts[d] < quotas[d] and d not in used]
    if candidates:
        device = min(candidates, key=lambda d: (counts[d] - quotas[d], order[d]))
        table[r][p] = device
        counts[device] += 1
        return

    # Every underloaded device already holds this partition. Move a slot
    # of some device x from another partition q to an underloaded device
    # there, then give this slot to x.
    underloaded = [d for d in devices if counts[d] < quotas[d]]
    for x in devices:
        if x in used:
            continue
        for q in range(len(table[0])):
            if q == p:
                continue
            in_q = {row[q] for row in table}
            if x not in in_q:
                continue
            for u in underloaded:
                if u in in_q:
                    continue
                r2 = next(i for i, row in enumerate(table) if row[q] == x)
                table[r2][q] = u
                counts[u] += 1
                table[r][p] = x
                return

    raise ValueError(f"unable to place replica {r} of partition {p}")


def build_ring(part_power: int, replicas: int, devices: Sequence[str]) -> Ring:
    """
    Build a ring from scratch.

    Args:
        part_power: The ring has 2**part_power partitions
        replicas: Distinct devices per partition
        devices: Ordered device identifiers

    Returns:
        Ring with every partition on ``replicas`` distinct devices

    Raises:
        ValueError: If there are fewer devices than replicas
    """
    _check_inputs(part_power, replicas, devices)
    parts = 1 << part_power
    table: List[List[Optional[str]]] = [[None] * parts for _ in range(replicas)]
    return _balance(part_power, replicas, tuple(devices), table)


def rebalance(ring: Ring, devices: Sequence[str]) -> Ring:
    """Rebalance an existing ring onto a new ordered device list."""
    _check_inputs(ring.part_power, ring.replicas, devices)
    table: List[List[Optional[str]]] = [list(row) for row in ring.assignments]
    return _balance(ring.part_power, ring.replicas, tuple(devices), table)


def changed_assignments(old: Ring, new: Ring) -> List[Tuple[int, int, str, str]]:
    """(replica, partition, old device, new device) for every moved slot."""
    changes = []
    for r, (old_row, new_row) in enumerate(zip(old.assignments, new.assignments)):
        for p, (before, after) in enumerate(zip(old_row, new_row)):
            if before != after:
                changes.append((r, p, before, after))
    return changes


def zone_devices(replicas: int, base_port: int, ip: str = "127.0.0.1", device: str = "sdb1") -> List[str]:
    """One device per zone, ports stepping by 10: ``z1-127.0.0.1:6010/sdb1``."""
    return [f"z{zone}-{ip}:{base_port + (zone - 1) * 10}/{device}" for zone in range(1, replicas + 1)]


@dataclass(frozen=True)
class RingSpec:
    part_power: int
    replicas: int
    devices: Tuple[str, ...]


class RingManager(ResourceManager):
    """Ring builder files (``<name>.builder.json``) in a config directory."""

    kind = "ring"

    def __init__(self, owner: str, config_dir: Path, **kwargs):
        super().__init__(owner, **kwargs)
        self.config_dir = Path(config_dir)

    def path(self, name: str) -> Path:
        return self.config_dir / f"{name}.builder.json"

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def _destroy(self, name: str) -> None:
        self.path(name).unlink()

    def _create(self, name: str, spec: Any) -> Dict[str, Any]:
        try:
            ring = build_ring(spec.part_power, spec.replicas, spec.devices)
        except ValueError as e:
            raise ResourceLifecycleError(str(self.key(name)), str(e))

        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.path(name), "w") as f:
            json.dump(ring.to_dict(), f)
        return {"partitions": ring.partition_count, "replicas": ring.replicas, "devices": len(ring.devices)}

    def load(self, name: str) -> Ring:
        with open(self.path(name), "r") as f:
            return Ring.from_dict(json.load(f))
