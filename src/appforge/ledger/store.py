"""Version ledger: the persisted source of truth for apps and versions.

The ledger is an explicit store object with an ``open``/``flush``/``close``
lifecycle. Every mutation runs inside a transaction that is flushed to disk
before it becomes visible; when the flush fails the in-memory state is
reverted, so callers observe all of a commit or none of it.

Writes are atomic for a single process (temp file + rename). Multiple
processes writing the same ledger file are not coordinated.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from appforge.errors import (
    AppExistsError,
    AppNotFoundError,
    LedgerReadFailure,
    LedgerWriteFailure,
    ValidationError,
    VersionNotFoundError,
)

from .models import DEFAULT_BASE_PORT, App, DockerStatus, LedgerData, Version

logger = logging.getLogger(__name__)

DEPENDENCY_MANIFEST = "package.json"

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)$")


def parse_version(identifier: str) -> tuple[int, int, int]:
    """Split ``vMAJOR.MINOR.PATCH`` into integers."""
    match = _VERSION_RE.match(identifier.strip())
    if not match:
        raise ValidationError(f"Invalid version identifier: {identifier}")
    major, minor, patch = (int(part) for part in match.groups())
    return major, minor, patch


def format_version(major: int, minor: int, patch: int) -> str:
    return f"v{major}.{minor}.{patch}"


def version_bump(current: str, change_set: Iterable[str]) -> str:
    """Compute the next version identifier from the paths that changed.

    A dependency-manifest change bumps MINOR and resets PATCH; anything else
    bumps PATCH. MAJOR never moves automatically.

    Example:
        >>> version_bump("v1.2.3", {"package.json"})
        'v1.3.0'
        >>> version_bump("v1.2.3", {"src/App.js"})
        'v1.2.4'
    """
    major, minor, patch = parse_version(current)
    if DEPENDENCY_MANIFEST in set(change_set):
        return format_version(major, minor + 1, 0)
    return format_version(major, minor, patch + 1)


def container_name_for(app_name: str, version: str) -> str:
    """Container name of a version, e.g. ``todo-list-v1-0-1``."""
    return f"{app_name}-{version.replace('.', '-')}"


class VersionLedger:
    """File-backed, append-only record of every version of every app."""

    def __init__(self, path: Path | str, base_port: int = DEFAULT_BASE_PORT):
        """Initialize the ledger.

        Args:
            path: Location of the ledger JSON file.
            base_port: ``nextPort`` seed for a fresh ledger.
        """
        self.path = Path(path)
        self.base_port = base_port
        self._data: LedgerData | None = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> VersionLedger:
        """Load the ledger from disk, or start an empty one."""
        with self._lock:
            if self.path.exists():
                try:
                    raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
                    self._data = LedgerData.model_validate(raw)
                except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
                    raise LedgerReadFailure(f"Could not load ledger {self.path}: {e}") from e
            else:
                self._data = LedgerData(next_port=self.base_port)
            logger.debug(f"Opened ledger {self.path} ({len(self._data.apps)} apps)")
        return self

    def flush(self) -> None:
        """Persist the ledger atomically.

        Raises:
            LedgerWriteFailure: If the file cannot be written
        """
        with self._lock:
            payload = json.dumps(
                self.data.model_dump(mode="json", by_alias=True),
                indent=2,
            )
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
                )
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        f.write(payload)
                    os.replace(tmp_name, self.path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
            except OSError as e:
                raise LedgerWriteFailure(f"Could not write ledger {self.path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            if self._data is not None:
                self.flush()
            self._data = None

    def __enter__(self) -> VersionLedger:
        if self._data is None:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def data(self) -> LedgerData:
        if self._data is None:
            raise RuntimeError("Ledger not open")
        return self._data

    @contextmanager
    def _transaction(self) -> Iterator[LedgerData]:
        """Mutate the ledger and flush; revert on any failure."""
        with self._lock:
            before = self.data.model_copy(deep=True)
            try:
                yield self.data
                self.flush()
            except BaseException:
                self._data = before
                raise

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def apps(self) -> list[App]:
        return list(self.data.apps)

    def get_app(self, name: str) -> App | None:
        for app in self.data.apps:
            if app.name == name:
                return app
        return None

    def require_app(self, name: str) -> App:
        app = self.get_app(name)
        if app is None:
            raise AppNotFoundError(name)
        return app

    def current_version(self, name: str) -> Version:
        """Return the version the app's current-version pointer names."""
        app = self.require_app(name)
        current = app.current()
        if current is None:
            raise VersionNotFoundError(name, str(app.current_version), app.version_ids())
        return current

    def get_version(self, name: str, version: str) -> Version:
        app = self.require_app(name)
        record = app.get_version(version)
        if record is None:
            raise VersionNotFoundError(name, version, app.version_ids())
        return record

    def next_version_for(self, name: str, change_set: Iterable[str]) -> str:
        """Bump the current version, skipping identifiers already recorded.

        After a rollback the plain bump can land on an existing version;
        identifiers stay unique by bumping again.
        """
        app = self.require_app(name)
        changes = set(change_set)
        candidate = version_bump(self.current_version(name).version, changes)
        taken = set(app.version_ids())
        while candidate in taken:
            candidate = version_bump(candidate, changes)
        return candidate

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register_app(self, app: App, initial: Version) -> App:
        """Add a new app together with its first version."""
        with self._transaction() as data:
            if any(existing.name == app.name for existing in data.apps):
                raise AppExistsError(app.name)
            app.versions = [initial]
            app.current_version = initial.version
            data.apps.append(app)
        logger.info(f"Registered {app.name} at {initial.version}")
        return self.require_app(app.name)

    def commit(self, name: str, new_version: Version) -> Version:
        """Append a version and make it the active one.

        The prior active version is deactivated in the same transaction.
        """
        with self._transaction():
            app = self.require_app(name)
            if app.get_version(new_version.version) is not None:
                raise ValidationError(
                    f"Version {new_version.version} already exists for {name}"
                )
            for record in app.versions:
                record.is_active = False
            new_version.is_active = True
            app.versions.append(new_version)
            app.current_version = new_version.version
            self._check_single_active(app)
        logger.info(f"Committed {name} {new_version.version}")
        return self.get_version(name, new_version.version)

    def activate(self, name: str, version: str, container_name: str | None = None) -> Version:
        """Point the app at an existing version and mark it running."""
        with self._transaction():
            app = self.require_app(name)
            target = app.get_version(version)
            if target is None:
                raise VersionNotFoundError(name, version, app.version_ids())
            for record in app.versions:
                record.is_active = False
            target.is_active = True
            target.docker_status = DockerStatus.RUNNING
            target.docker_error = None
            if container_name:
                target.container_name = container_name
            app.current_version = target.version
            self._check_single_active(app)
        logger.info(f"Activated {name} {version}")
        return self.get_version(name, version)

    def update_version(self, name: str, version: str, **changes) -> Version:
        """Update deployment fields of a recorded version.

        Only status-style fields may change; file sets and lineage are
        immutable once committed.
        """
        allowed = {
            "docker_status",
            "docker_error",
            "attempts",
            "container_name",
            "is_active",
            "performance",
            "backup_path",
        }
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Immutable version fields: {', '.join(sorted(unknown))}")

        with self._transaction():
            app = self.require_app(name)
            record = app.get_version(version)
            if record is None:
                raise VersionNotFoundError(name, version, app.version_ids())
            if changes.get("is_active"):
                for other in app.versions:
                    other.is_active = False
            for key, value in changes.items():
                setattr(record, key, value)
            self._check_single_active(app)
        return self.get_version(name, version)

    def set_port(self, name: str, port: int) -> App:
        with self._transaction():
            self.require_app(name).port = port
        return self.require_app(name)

    def remove_app(self, name: str) -> None:
        with self._transaction() as data:
            app = self.require_app(name)
            data.apps.remove(app)
        logger.info(f"Removed {name} from ledger")

    def allocate_port(self, is_free: Callable[[int], bool], max_attempts: int = 100) -> int:
        """Hand out the next free external port and advance ``nextPort``."""
        with self._transaction() as data:
            taken = {app.port for app in data.apps if app.port is not None}
            port = data.next_port
            for _ in range(max_attempts):
                if port not in taken and is_free(port):
                    data.next_port = port + 1
                    break
                port += 1
            else:
                raise ValidationError(
                    f"Could not find available port starting from {data.next_port}"
                )
        return port

    @staticmethod
    def _check_single_active(app: App) -> None:
        active = app.active_versions()
        if len(active) > 1:
            raise ValidationError(
                f"{app.name} has {len(active)} active versions: "
                + ", ".join(v.version for v in active)
            )
