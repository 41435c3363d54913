"""Lifecycle managers for stateful resources outside stackup."""

from stackup.resources.base import Resource, ResourceKey, ResourceManager, ResourceState
from stackup.resources.compute import InstanceManager, StateDirectoryManager
from stackup.resources.database import CharsetSpec, DatabaseManager
from stackup.resources.loopback import LoopbackFilesystemManager, LoopbackSpec
from stackup.resources.network import (
    BridgeManager,
    FirewallManager,
    FirewallRule,
    FirewallSpec,
    OvsBridgeManager,
    owned_rule_deletions,
)
from stackup.resources.ring import Ring, RingManager, RingSpec, build_ring, rebalance

__all__ = [
    "Resource",
    "ResourceKey",
    "ResourceManager",
    "ResourceState",
    "CharsetSpec",
    "DatabaseManager",
    "InstanceManager",
    "StateDirectoryManager",
    "LoopbackFilesystemManager",
    "LoopbackSpec",
    "BridgeManager",
    "FirewallManager",
    "FirewallRule",
    "FirewallSpec",
    "OvsBridgeManager",
    "owned_rule_deletions",
    "Ring",
    "RingManager",
    "RingSpec",
    "build_ring",
    "rebalance",
]
