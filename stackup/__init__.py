"""
stackup - Single-host cloud provisioning orchestrator

Resolves the enabled service set, recreates stateful resources and
starts service daemons in a fixed, health-gated order.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = ["StackConfig", "load_config", "get_stackup_home"]

from .config import StackConfig, load_config, get_stackup_home
