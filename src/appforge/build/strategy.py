"""Build tier selection and app-type classification.

Both are pure decisions. The tier only bounds build latency by choosing
which cached layers may be reused; every tier still yields a correct image.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatchcase
from pathlib import Path

from appforge.ledger.store import DEPENDENCY_MANIFEST

logger = logging.getLogger(__name__)

BACKEND_PATTERNS = (
    "server.js",
    "server.ts",
    "server.mjs",
    "server.cjs",
    "server/*",
    "api/*",
    "routes/*",
    "backend/*",
    "db/*",
    "models/*",
    "middleware/*",
)

FRONTEND_PATTERNS = (
    "src/*",
    "public/*",
    "index.html",
    "vite.config.*",
    "tailwind.config.*",
    "postcss.config.*",
)

SERVER_ENTRY_POINTS = ("server.js", "server.ts", "server.mjs", "server.cjs")
FRONTEND_BUILD_TOOLS = ("vite",)
WEB_FRAMEWORKS = ("express",)


class BuildTier(str, Enum):
    """Granularity of rebuild work for one build."""

    DEPENDENCY_REBUILD = "dependency-rebuild"
    BACKEND_ONLY = "backend-only"
    FRONTEND_ONLY = "frontend-only"
    FULL_REBUILD = "full-rebuild"


class AppType(str, Enum):
    """Container recipe selector."""

    FRONTEND_ONLY = "frontend-only"
    BACKEND_ONLY = "backend-only"
    FULLSTACK = "fullstack"


@dataclass(frozen=True)
class AppCapabilities:
    """What an app's file set provides, as far as the recipe cares."""

    has_frontend_build_tool: bool = False
    has_server_entry_point: bool = False
    has_web_framework_dependency: bool = False


@dataclass(frozen=True)
class BuildPlan:
    """Ephemeral build decision for one image build."""

    tier: BuildTier
    reason: str
    change_set: frozenset[str] = field(default_factory=frozenset)
    app_type: AppType | None = None

    @property
    def cache_stages(self) -> tuple[str, ...]:
        """Image tags (``<app>:<stage>``) usable as cache sources."""
        return _CACHE_STAGES[self.tier]

    @property
    def no_cache_stages(self) -> tuple[str, ...]:
        """Stages that must be rebuilt regardless of cache."""
        return ("deps",) if self.tier is BuildTier.DEPENDENCY_REBUILD else ()


_CACHE_STAGES = {
    BuildTier.DEPENDENCY_REBUILD: ("latest",),
    BuildTier.BACKEND_ONLY: ("latest", "deps", "builder"),
    BuildTier.FRONTEND_ONLY: ("latest", "deps"),
    BuildTier.FULL_REBUILD: ("latest",),
}


def _matches(path: str, patterns: Iterable[str]) -> bool:
    return any(fnmatchcase(path, pattern) for pattern in patterns)


def select_build_tier(change_set: Iterable[str], first_build: bool = False) -> BuildPlan:
    """Decide the build tier for a set of changed paths.

    A dependency-manifest change dominates everything else. Mixed,
    unrecognized or empty change sets, and first builds, rebuild fully.

    Example:
        >>> select_build_tier({"package.json", "server.js"}).tier
        <BuildTier.DEPENDENCY_REBUILD: 'dependency-rebuild'>
    """
    changes = frozenset(change_set)

    if DEPENDENCY_MANIFEST in changes:
        return BuildPlan(BuildTier.DEPENDENCY_REBUILD, "dependency manifest changed", changes)
    if first_build:
        return BuildPlan(BuildTier.FULL_REBUILD, "first build", changes)
    if not changes:
        return BuildPlan(BuildTier.FULL_REBUILD, "no recorded changes", changes)

    backend = {p for p in changes if _matches(p, BACKEND_PATTERNS)}
    frontend = {p for p in changes if _matches(p, FRONTEND_PATTERNS)}
    unrecognized = changes - backend - frontend

    if unrecognized:
        return BuildPlan(
            BuildTier.FULL_REBUILD,
            f"unrecognized changes: {', '.join(sorted(unrecognized))}",
            changes,
        )
    if backend and not frontend:
        return BuildPlan(BuildTier.BACKEND_ONLY, "only backend files changed", changes)
    if frontend and not backend:
        return BuildPlan(BuildTier.FRONTEND_ONLY, "only frontend files changed", changes)
    return BuildPlan(BuildTier.FULL_REBUILD, "backend and frontend files changed", changes)


def classify_app_type(capabilities: AppCapabilities) -> AppType:
    """Pick the container recipe from an app's capabilities."""
    if capabilities.has_frontend_build_tool:
        if capabilities.has_server_entry_point and capabilities.has_web_framework_dependency:
            return AppType.FULLSTACK
        return AppType.FRONTEND_ONLY
    return AppType.BACKEND_ONLY


def capabilities_from_manifest(manifest: dict | None, files: Iterable[str]) -> AppCapabilities:
    """Derive capabilities from a parsed package.json and the file list."""
    manifest = manifest or {}
    dependencies = manifest.get("dependencies") or {}
    dev_dependencies = manifest.get("devDependencies") or {}
    all_dependencies = {**dev_dependencies, **dependencies}
    paths = set(files)
    return AppCapabilities(
        has_frontend_build_tool=any(tool in all_dependencies for tool in FRONTEND_BUILD_TOOLS),
        has_server_entry_point=any(entry in paths for entry in SERVER_ENTRY_POINTS),
        has_web_framework_dependency=any(fw in dependencies for fw in WEB_FRAMEWORKS),
    )


def detect_capabilities(app_dir: Path | str) -> AppCapabilities:
    """Inspect a live app directory.

    An unreadable or invalid manifest yields no frontend/framework
    capabilities, which classifies as backend-only.
    """
    app_dir = Path(app_dir)
    manifest = None
    manifest_path = app_dir / DEPENDENCY_MANIFEST
    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not analyze {manifest_path}, assuming backend-only: {e}")

    files = [entry for entry in SERVER_ENTRY_POINTS if (app_dir / entry).is_file()]
    return capabilities_from_manifest(manifest if isinstance(manifest, dict) else None, files)


def detect_app_type(app_dir: Path | str) -> AppType:
    app_type = classify_app_type(detect_capabilities(app_dir))
    logger.info(f"Detected {app_type.value} app in {app_dir}")
    return app_type
