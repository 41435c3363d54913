"""
Base classes for external resource managers.

Every stateful artifact stackup owns outside its own memory (a database,
a bridge, a firewall chain, a loopback filesystem, a ring file) is
handled by a ResourceManager. Managers never check-then-create: the only
way to get a resource is ensure_present(), which destroys whatever is
there first and creates it again. Running it twice leaves one resource.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from stackup.errors import CommandError, ResourceLifecycleError
from stackup.utils import CommandRunner, get_logger


class ResourceState(str, Enum):
    ABSENT = "absent"
    PRESENT = "present"


@dataclass(frozen=True)
class ResourceKey:
    """Deterministic identity of a resource, tagged with its owner."""

    owner: str
    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.owner}:{self.kind}:{self.name}"


@dataclass
class Resource:
    """A resource as left by the last lifecycle call."""

    key: ResourceKey
    state: ResourceState
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": str(self.key),
            "state": self.state.value,
            "attributes": {k: str(v) for k, v in self.attributes.items()},
        }


class ResourceManager(ABC):
    """
    Abstract base class for resource managers.

    Subclasses implement:
    - exists(): Whether the resource is there now
    - _destroy(): Remove it (only called when it exists)
    - _create(): Create it from scratch (only called after _destroy)
    """

    kind = "resource"

    def __init__(self, owner: str, runner: Optional[CommandRunner] = None, logger: Optional[logging.Logger] = None):
        self.owner = owner
        self.logger = logger or get_logger()
        self.runner = runner or CommandRunner(self.logger)

    def key(self, name: str) -> ResourceKey:
        return ResourceKey(self.owner, self.kind, name)

    @abstractmethod
    def exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def _destroy(self, name: str) -> None:
        pass

    @abstractmethod
    def _create(self, name: str, spec: Any) -> Dict[str, Any]:
        """Create the resource and return attributes describing it."""
        pass

    def ensure_absent(self, name: str) -> Resource:
        """
        Destroy the resource if it exists.

        Raises:
            ResourceLifecycleError: If destroying fails
        """
        key = self.key(name)
        try:
            if self.exists(name):
                self.logger.info(
                    f"Destroying {key}",
                    extra={"resource": str(key), "event": "resource_destroying"},
                )
                self._destroy(name)
        except ResourceLifecycleError:
            raise
        except (CommandError, OSError) as e:
            raise ResourceLifecycleError(str(key), f"destroy failed: {e}")
        return Resource(key, ResourceState.ABSENT)

    def ensure_present(self, name: str, spec: Any = None) -> Resource:
        """
        Recreate the resource: ensure_absent() followed by creation.

        Raises:
            ResourceLifecycleError: If destroying or creating fails
        """
        self.ensure_absent(name)
        key = self.key(name)
        try:
            attributes = self._create(name, spec) or {}
        except ResourceLifecycleError:
            raise
        except (CommandError, OSError) as e:
            raise ResourceLifecycleError(str(key), f"create failed: {e}")

        self.logger.info(
            f"Created {key}",
            extra={"resource": str(key), "event": "resource_created", "metadata": attributes},
        )
        return Resource(key, ResourceState.PRESENT, attributes)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(owner={self.owner})"
