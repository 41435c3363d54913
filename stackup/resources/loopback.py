"""Loopback-backed XFS filesystem, reformatted on every run."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from stackup.resources.base import ResourceManager


PROC_MOUNTS = Path("/proc/mounts")


@dataclass(frozen=True)
class LoopbackSpec:
    """Size in bytes and how to format and mount."""

    size: int
    mount_options: str = "loop,noatime,nodiratime,nobarrier,logbufs=8"
    inode_size: int = 1024


class LoopbackFilesystemManager(ResourceManager):
    """
    Sparse image file formatted as XFS and loop-mounted.

    The resource name is the image path. The mount point belongs to the
    manager, so the mount a run creates is the one the next run removes.
    """

    kind = "loopback"

    def __init__(self, owner: str, mount_point: Path, mounts_file: Path = PROC_MOUNTS, **kwargs):
        super().__init__(owner, **kwargs)
        self.mount_point = Path(mount_point)
        self.mounts_file = Path(mounts_file)

    def is_mounted(self, mount_point: Optional[Path] = None) -> bool:
        target = str(mount_point or self.mount_point)
        if not self.mounts_file.exists():
            return False
        for line in self.mounts_file.read_text().splitlines():
            fields = line.split()
            if len(fields) > 1 and fields[1] == target:
                return True
        return False

    def exists(self, name: str) -> bool:
        return Path(name).exists() or self.is_mounted()

    def _destroy(self, name: str) -> None:
        if self.is_mounted():
            self.runner.run(["umount", str(self.mount_point)], privileged=True)
        image = Path(name)
        if image.exists():
            image.unlink()

    def _create(self, name: str, spec: Any) -> Dict[str, Any]:
        image = Path(name)
        image.parent.mkdir(parents=True, exist_ok=True)
        with open(image, "wb") as f:
            f.truncate(spec.size)

        self.runner.run(["mkfs.xfs", "-f", "-i", f"size={spec.inode_size}", str(image)])

        self.mount_point.mkdir(parents=True, exist_ok=True)
        self.runner.run(
            ["mount", "-t", "xfs", "-o", spec.mount_options, str(image), str(self.mount_point)],
            privileged=True,
        )
        return {"size": spec.size, "mount_point": self.mount_point}
