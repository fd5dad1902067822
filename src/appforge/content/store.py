"""Content store: file access and change detection for a live app directory."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from appforge.errors import FileWriteFailure, ValidationError
from appforge.utils.validation import validate_relative_path

logger = logging.getLogger(__name__)

# Fingerprint recorded for a file that could not be read
UNKNOWN_HASH = "unknown"


def hash_content(content: bytes | str) -> str:
    """Return the SHA-256 hex digest of file content."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


@dataclass(frozen=True)
class FileDiff:
    """Set comparison of two fingerprint maps.

    Collections carry no order; sort for display only.
    """

    changed: frozenset[str] = field(default_factory=frozenset)
    added: frozenset[str] = field(default_factory=frozenset)
    removed: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not (self.changed or self.added or self.removed)

    @property
    def touched(self) -> frozenset[str]:
        """Paths whose new content differs from the old (changed or added)."""
        return self.changed | self.added

    @property
    def all_paths(self) -> frozenset[str]:
        return self.changed | self.added | self.removed

    def summary(self) -> str:
        return (
            f"{len(self.changed)} modified, {len(self.added)} added, "
            f"{len(self.removed)} removed"
        )


def diff_fingerprints(old: Mapping[str, str], new: Mapping[str, str]) -> FileDiff:
    """Compare two path -> hash maps.

    A path in both maps with a different hash is changed, a path only in
    ``new`` is added and a path only in ``old`` is removed.
    """
    old_paths = set(old)
    new_paths = set(new)
    return FileDiff(
        changed=frozenset(p for p in old_paths & new_paths if old[p] != new[p]),
        added=frozenset(new_paths - old_paths),
        removed=frozenset(old_paths - new_paths),
    )


class ContentStore:
    """Reads, writes and fingerprints files inside one app directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def resolve(self, path: str) -> Path:
        """Map a relative path to its location under the root.

        Raises:
            ValidationError: If the path is unsafe
        """
        return self.root / validate_relative_path(path, self.root)

    def exists(self, path: str) -> bool:
        try:
            return self.resolve(path).is_file()
        except ValidationError:
            return False

    def read_text(self, path: str) -> str | None:
        """Read a file, returning None when it is missing or unreadable."""
        try:
            return self.resolve(path).read_text(encoding="utf-8")
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Could not read {path}: {e}")
            return None

    def read_many(self, paths: Iterable[str]) -> dict[str, str | None]:
        """Read several files; unreadable ones map to None."""
        return {path: self.read_text(path) for path in paths}

    def write_text(self, path: str, content: str) -> str:
        """Write a file, creating parent directories as needed.

        Returns:
            The normalized relative path written

        Raises:
            FileWriteFailure: If the path is unsafe or the write fails
        """
        try:
            relative = validate_relative_path(path, self.root)
        except ValidationError as e:
            raise FileWriteFailure(str(e), path=path) from e

        target = self.root / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            raise FileWriteFailure(f"Could not write {relative}: {e}", path=relative) from e
        return relative

    def delete(self, path: str) -> bool:
        """Delete a file if present. Returns True if something was removed."""
        try:
            target = self.resolve(path)
        except ValidationError as e:
            logger.warning(f"Refusing to delete {path}: {e}")
            return False
        if not target.is_file():
            return False
        try:
            target.unlink()
        except OSError as e:
            logger.warning(f"Could not delete {path}: {e}")
            return False
        return True

    def fingerprint(self, paths: Iterable[str]) -> dict[str, str]:
        """Hash each file's content.

        A file that cannot be read is recorded as ``"unknown"`` so one bad
        file never aborts the batch.
        """
        hashes: dict[str, str] = {}
        for path in paths:
            try:
                hashes[path] = hash_content(self.resolve(path).read_bytes())
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(f"Could not hash {path}: {e}")
                hashes[path] = UNKNOWN_HASH
        return hashes

    def diff(self, old: Mapping[str, str], new: Mapping[str, str]) -> FileDiff:
        return diff_fingerprints(old, new)

    def list_files(self, exclude_dirs: Iterable[str] = ()) -> list[str]:
        """List every file under the root as sorted relative POSIX paths."""
        excluded = set(exclude_dirs)
        if not self.root.is_dir():
            return []
        files = []
        for path in self.root.rglob("*"):
            if not path.is_file():
                continue
            relative = path.relative_to(self.root)
            if excluded & set(relative.parts[:-1]):
                continue
            files.append(relative.as_posix())
        return sorted(files)
