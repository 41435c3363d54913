"""Provisioning stages, in the order they run."""

from stackup.stages.base import RunContext, Stage, StageResult, daemon_health_check
from stackup.stages.configure import ConfigureStage
from stackup.stages.database import DatabaseStage
from stackup.stages.identity import IdentityStage
from stackup.stages.install import LibrariesStage, PackagesStage, SourcesStage
from stackup.stages.processes import ProcessesStage, VerifyStage
from stackup.stages.seed import SeedStage

STAGES = (
    PackagesStage,
    SourcesStage,
    LibrariesStage,
    ConfigureStage,
    DatabaseStage,
    IdentityStage,
    ProcessesStage,
    VerifyStage,
    SeedStage,
)

__all__ = [
    "STAGES",
    "RunContext",
    "Stage",
    "StageResult",
    "daemon_health_check",
    "ConfigureStage",
    "DatabaseStage",
    "IdentityStage",
    "LibrariesStage",
    "PackagesStage",
    "ProcessesStage",
    "SeedStage",
    "SourcesStage",
    "VerifyStage",
]
