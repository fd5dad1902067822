"""Orchestration of create / improve / rollback cycles."""

from .locks import AppLockRegistry
from .orchestrator import (
    BenchmarkReport,
    BenchmarkRun,
    BuildOutcome,
    CycleResult,
    CycleStage,
    Orchestrator,
    VersionDiff,
    is_port_free,
)

__all__ = [
    "AppLockRegistry",
    "BenchmarkReport",
    "BenchmarkRun",
    "BuildOutcome",
    "CycleResult",
    "CycleStage",
    "Orchestrator",
    "VersionDiff",
    "is_port_free",
]
