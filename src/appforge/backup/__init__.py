"""Per-version snapshots of live app directories."""

from .manager import BackupManager, RestoreResult, SnapshotInfo

__all__ = ["BackupManager", "RestoreResult", "SnapshotInfo"]
