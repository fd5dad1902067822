"""Ledger models: apps, their versions and the persisted document.

Field names serialize in camelCase to match the on-disk ``apps.json``
layout.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

INITIAL_VERSION = "v1.0.0"
DEFAULT_BASE_PORT = 3100


def utcnow() -> datetime:
    return datetime.now(UTC)


class LedgerModel(BaseModel):
    """Base for persisted ledger records."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class DockerStatus(str, Enum):
    """Deployment status of a version's container."""

    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


class BuildMetrics(LedgerModel):
    """Timings of the build that produced a version (milliseconds)."""

    total_build_time: int = 0
    docker_build_time: int = 0
    optimized: bool = True
    tier: str | None = None
    app_type: str | None = None


class Performance(LedgerModel):
    """Generation and build performance for a version."""

    latency: float | None = None
    tokens: dict[str, Any] | None = None
    build_metrics: BuildMetrics | None = None


class Version(LedgerModel):
    """One committed snapshot of an app."""

    version: str
    prompt: str
    improvements: list[str] = Field(default_factory=list)
    changes_explanation: str = ""
    container_name: str | None = None
    files: list[str] = Field(default_factory=list)
    file_hashes: dict[str, str] = Field(default_factory=dict)
    performance: Performance = Field(default_factory=Performance)
    created_at: datetime = Field(default_factory=utcnow)
    is_active: bool = False
    docker_status: DockerStatus = DockerStatus.PENDING
    docker_error: str | None = None
    attempts: int = 1
    parent_version: str | None = None
    changed_files: list[str] = Field(default_factory=list)
    added_files: list[str] = Field(default_factory=list)
    removed_files: list[str] = Field(default_factory=list)
    backup_path: str | None = None


class App(LedgerModel):
    """A named, independently deployed unit and its version history."""

    name: str
    current_version: str | None = None
    port: int | None = None
    created_at: datetime = Field(default_factory=utcnow)
    versions: list[Version] = Field(default_factory=list)

    def get_version(self, version: str) -> Version | None:
        for record in self.versions:
            if record.version == version:
                return record
        return None

    def current(self) -> Version | None:
        if self.current_version is None:
            return None
        return self.get_version(self.current_version)

    def active_versions(self) -> list[Version]:
        return [v for v in self.versions if v.is_active]

    def version_ids(self) -> list[str]:
        return [v.version for v in self.versions]


class LedgerData(LedgerModel):
    """The whole persisted ledger document."""

    apps: list[App] = Field(default_factory=list)
    next_port: int = DEFAULT_BASE_PORT
