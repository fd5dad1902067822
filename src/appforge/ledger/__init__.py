"""Version ledger: persisted apps, versions and lineage."""

from .models import (
    INITIAL_VERSION,
    App,
    BuildMetrics,
    DockerStatus,
    LedgerData,
    Performance,
    Version,
)
from .store import (
    DEPENDENCY_MANIFEST,
    VersionLedger,
    container_name_for,
    format_version,
    parse_version,
    version_bump,
)

__all__ = [
    "App",
    "BuildMetrics",
    "DockerStatus",
    "INITIAL_VERSION",
    "LedgerData",
    "Performance",
    "Version",
    "DEPENDENCY_MANIFEST",
    "VersionLedger",
    "container_name_for",
    "format_version",
    "parse_version",
    "version_bump",
]
