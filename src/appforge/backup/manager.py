"""Backup management for versioned app directories.

Snapshots live outside the live app directory, one directory per
(app, version), mirroring the live directory's relative layout::

    <backups_dir>/<app>/<version>/
        manifest.json
        files/<relative paths...>
"""

from __future__ import annotations

import json
import logging
import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from appforge.errors import BackupFailure, RestoreFailure, ValidationError
from appforge.ledger.models import Version
from appforge.utils.validation import validate_relative_path

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
FILES_DIR = "files"


@dataclass
class SnapshotInfo:
    """A snapshot on disk."""

    app_name: str
    version: str
    path: Path
    created_at: datetime
    files: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass
class RestoreResult:
    """Outcome of a restore. Failures are returned, never raised."""

    success: bool
    version: str | None = None
    restored: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unrecoverable: list[str] = field(default_factory=list)
    error: RestoreFailure | None = None


class BackupManager:
    """Creates, restores and prunes per-version snapshots.

    The manager never touches the version ledger; callers pass the
    version record whose file list drives a restore.
    """

    def __init__(self, backups_dir: Path | str, apps_dir: Path | str):
        """Initialize backup manager.

        Args:
            backups_dir: Root for snapshot storage.
            apps_dir: Root of live app directories (``<apps_dir>/<app>``).
        """
        self.backups_dir = Path(backups_dir)
        self.apps_dir = Path(apps_dir)

    def app_dir(self, app_name: str) -> Path:
        return self.apps_dir / app_name

    def snapshot_path(self, app_name: str, version: str) -> Path:
        return self.backups_dir / app_name / version

    def has_snapshot(self, app_name: str, version: str) -> bool:
        return (self.snapshot_path(app_name, version) / MANIFEST_NAME).is_file()

    def snapshot(self, app_name: str, version: str, files: Iterable[str]) -> Path:
        """Copy a version's files from the live directory into its snapshot.

        Files that cannot be copied are logged and skipped; a missing file
        is treated as not recoverable at restore time. An existing snapshot
        of the same version is replaced only once the new copy is complete.

        Returns:
            Path of the snapshot directory

        Raises:
            BackupFailure: If the snapshot directory or manifest cannot be written
        """
        source_root = self.app_dir(app_name)
        target = self.snapshot_path(app_name, version)
        staging = target.with_name(f".{version}.partial")

        copied: list[str] = []
        skipped: list[str] = []
        try:
            if staging.exists():
                shutil.rmtree(staging)
            (staging / FILES_DIR).mkdir(parents=True)
        except OSError as e:
            raise BackupFailure(
                f"Could not create snapshot directory for {app_name} {version}: {e}",
                {"app": app_name, "version": version},
            ) from e

        for relative in sorted(set(files)):
            try:
                relative = validate_relative_path(relative, source_root)
                source = source_root / relative
                destination = staging / FILES_DIR / relative
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, destination)
                copied.append(relative)
            except (OSError, ValidationError) as e:
                logger.warning(f"Could not back up {relative} for {app_name} {version}: {e}")
                skipped.append(relative)

        manifest = {
            "app": app_name,
            "version": version,
            "createdAt": datetime.now(UTC).isoformat(),
            "files": copied,
            "skipped": skipped,
        }
        try:
            (staging / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2), encoding="utf-8")
            if target.exists():
                shutil.rmtree(target)
            staging.rename(target)
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise BackupFailure(
                f"Could not finalize snapshot for {app_name} {version}: {e}",
                {"app": app_name, "version": version},
            ) from e

        logger.info(
            f"Backed up {len(copied)} files for {app_name} {version}"
            + (f" ({len(skipped)} skipped)" if skipped else "")
        )
        return target

    def restore(
        self,
        app_name: str,
        version: Version | None,
        remove_paths: Iterable[str] = (),
    ) -> RestoreResult:
        """Copy a version's files from its snapshot back into the live directory.

        Args:
            app_name: App to restore.
            version: Ledger record of the version; its file list drives the copy.
            remove_paths: Live files to delete when the version does not own them
                (e.g. files a failed cycle added).

        Returns:
            RestoreResult. Restoring twice yields the same end state.
        """
        version_id = version.version if version is not None else None
        if version is None:
            return self._failed(app_name, version_id, "No ledger record of the version's files")

        snapshot_files = self.snapshot_path(app_name, version.version) / FILES_DIR
        if not snapshot_files.is_dir():
            return self._failed(
                app_name, version_id, f"Snapshot not found: {snapshot_files.parent}"
            )

        live_root = self.app_dir(app_name)
        result = RestoreResult(success=True, version=version_id)
        try:
            live_root.mkdir(parents=True, exist_ok=True)
            for relative in version.files:
                source = snapshot_files / relative
                if not source.is_file():
                    result.unrecoverable.append(relative)
                    continue
                destination = live_root / validate_relative_path(relative, live_root)
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, destination)
                result.restored.append(relative)

            owned = set(version.files)
            for relative in sorted(set(remove_paths) - owned):
                target = live_root / validate_relative_path(relative, live_root)
                if target.is_file():
                    target.unlink()
                    result.removed.append(relative)
        except (OSError, ValidationError) as e:
            return self._failed(app_name, version_id, f"Restore interrupted: {e}")

        if result.unrecoverable:
            logger.warning(
                f"{len(result.unrecoverable)} file(s) of {app_name} {version_id} "
                f"not recoverable: {', '.join(result.unrecoverable)}"
            )
        logger.info(f"Restored {app_name} to {version_id} ({len(result.restored)} files)")
        return result

    def _failed(self, app_name: str, version: str | None, message: str) -> RestoreResult:
        logger.error(f"Restore of {app_name} {version} failed: {message}")
        return RestoreResult(
            success=False,
            version=version,
            error=RestoreFailure(message, app_name=app_name, version=version),
        )

    def list_snapshots(self, app_name: str) -> list[SnapshotInfo]:
        """List an app's snapshots, newest first."""
        app_root = self.backups_dir / app_name
        if not app_root.is_dir():
            return []

        snapshots = []
        for entry in app_root.iterdir():
            manifest_path = entry / MANIFEST_NAME
            if not entry.is_dir() or entry.name.startswith(".") or not manifest_path.is_file():
                continue
            try:
                manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
                created_at = datetime.fromisoformat(manifest["createdAt"])
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Could not read snapshot manifest {manifest_path}: {e}")
                manifest = {}
                created_at = datetime.fromtimestamp(entry.stat().st_mtime, UTC)
            snapshots.append(
                SnapshotInfo(
                    app_name=app_name,
                    version=entry.name,
                    path=entry,
                    created_at=created_at,
                    files=manifest.get("files", []),
                    skipped=manifest.get("skipped", []),
                )
            )
        return sorted(snapshots, key=lambda s: s.created_at, reverse=True)

    def prune(self, app_name: str, keep: int = 5, protect: Iterable[str] = ()) -> list[str]:
        """Delete all but the ``keep`` most recent snapshots of an app.

        Snapshots of versions in ``protect`` (the active version) are never
        deleted and do not count against ``keep``.

        Returns:
            Versions whose snapshots were deleted
        """
        protected = set(protect)
        candidates = [s for s in self.list_snapshots(app_name) if s.version not in protected]
        removed = []
        for info in candidates[max(keep, 0) :]:
            try:
                shutil.rmtree(info.path)
            except OSError as e:
                logger.warning(f"Could not delete snapshot {info.path}: {e}")
                continue
            removed.append(info.version)
            logger.debug(f"Pruned snapshot {app_name} {info.version}")
        if removed:
            logger.info(f"Pruned {len(removed)} snapshot(s) of {app_name}")
        return removed

    def delete_all(self, app_name: str) -> None:
        """Delete every snapshot of an app."""
        app_root = self.backups_dir / app_name
        if app_root.exists():
            shutil.rmtree(app_root)
            logger.info(f"Deleted all snapshots of {app_name}")
