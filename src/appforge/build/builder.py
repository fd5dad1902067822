"""Container builder: renders a multi-stage recipe and builds a versioned image."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from jinja2 import Environment, PackageLoader, StrictUndefined, TemplateError

from appforge.engine.docker import ContainerEngine, EngineResult
from appforge.errors import BuildFailure
from appforge.ledger.models import BuildMetrics
from appforge.utils.validation import sanitize_log_message, truncate_diagnostics

from .strategy import SERVER_ENTRY_POINTS, AppType, BuildPlan, detect_app_type

logger = logging.getLogger(__name__)

DOCKERFILE_NAME = "Dockerfile"
RUNTIME_STAGE = "runtime"
NODE_VERSION = "20"

# Directories never copied into an image
EXCLUDED_APP_FOLDERS = frozenset({"node_modules", ".git", ".backups", "dist", "build", ".vscode"})

_templates = Environment(
    loader=PackageLoader("appforge", "build/templates"),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,  # nosec B701 - renders Dockerfiles, not HTML
)


@dataclass
class BuildResult:
    """Outcome of one build. A failure carries a BuildFailure, never raises."""

    success: bool
    image: str | None = None
    tags: list[str] = field(default_factory=list)
    app_type: AppType | None = None
    plan: BuildPlan | None = None
    used_fallback: bool = False
    docker_build_ms: int = 0
    total_ms: int = 0
    optimized: bool = True
    error: BuildFailure | None = None

    @property
    def diagnostics(self) -> str:
        return self.error.diagnostics if self.error else ""

    def metrics(self) -> BuildMetrics:
        return BuildMetrics(
            total_build_time=self.total_ms,
            docker_build_time=self.docker_build_ms,
            optimized=self.optimized and not self.used_fallback,
            tier=self.plan.tier.value if self.plan else None,
            app_type=self.app_type.value if self.app_type else None,
        )


def image_tags(app_name: str, version: str, container_name: str) -> list[str]:
    """Tags applied to every build: the container name, the version and latest."""
    return [container_name, f"{app_name}:{version}", f"{app_name}:latest"]


def detect_app_folders(app_dir: Path) -> list[str]:
    """Top-level directories that hold at least one file."""
    folders = []
    try:
        entries = sorted(app_dir.iterdir())
    except OSError as e:
        logger.warning(f"Could not detect app folders in {app_dir}: {e}")
        return []
    for entry in entries:
        if not entry.is_dir() or entry.name in EXCLUDED_APP_FOLDERS:
            continue
        try:
            if any(item.is_file() for item in entry.iterdir()):
                folders.append(entry.name)
        except OSError as e:
            logger.warning(f"Could not read folder {entry.name}: {e}")
    return folders


def detect_entry_point(app_dir: Path) -> str:
    for candidate in SERVER_ENTRY_POINTS:
        if (app_dir / candidate).is_file():
            return candidate
    return "index.js"


def render_recipe(app_type: AppType, app_dir: Path, container_port: int = 3000) -> str:
    """Render the Dockerfile for an app type against a live app directory."""
    template = _templates.get_template(f"Dockerfile.{app_type.value}.j2")
    return template.render(
        app_folders=detect_app_folders(app_dir),
        entry_point=detect_entry_point(app_dir),
        container_port=container_port,
        node_version=NODE_VERSION,
    )


class ContainerBuilder:
    """Builds images tagged with a version identifier and ``latest``."""

    def __init__(
        self,
        engine: ContainerEngine,
        container_port: int = 3000,
        optimized: bool = True,
        diagnostics_max_chars: int = 4000,
    ):
        self.engine = engine
        self.container_port = container_port
        self.optimized = optimized
        self.diagnostics_max_chars = diagnostics_max_chars

    def _diagnostics(self, result: EngineResult) -> str:
        text = result.output or result.describe()
        if result.timed_out:
            text = f"Build timed out after {result.duration_ms}ms\n{text}"
        return truncate_diagnostics(sanitize_log_message(text), self.diagnostics_max_chars)

    async def build(
        self,
        app_name: str,
        version: str,
        container_name: str,
        app_dir: Path | str,
        plan: BuildPlan,
    ) -> BuildResult:
        """Materialize the recipe and build the image.

        An optimized (cached) build that fails is retried once without
        cache before the failure is reported.
        """
        app_dir = Path(app_dir)
        started = time.monotonic()
        app_type = plan.app_type or detect_app_type(app_dir)
        tags = image_tags(app_name, version, container_name)
        result = BuildResult(
            success=False,
            tags=tags,
            app_type=app_type,
            plan=plan,
            optimized=self.optimized,
        )

        try:
            recipe = render_recipe(app_type, app_dir, self.container_port)
            (app_dir / DOCKERFILE_NAME).write_text(recipe, encoding="utf-8")
        except (OSError, TemplateError) as e:
            result.error = BuildFailure(f"Could not write build recipe: {e}", diagnostics=str(e))
            result.total_ms = int((time.monotonic() - started) * 1000)
            return result

        logger.info(
            f"Building {app_name} {version} ({app_type.value}, tier {plan.tier.value}: {plan.reason})"
        )

        if self.optimized:
            engine_result = await self.engine.build_image(
                app_dir,
                tags,
                cache_from=[f"{app_name}:{stage}" for stage in plan.cache_stages],
                no_cache_filter=plan.no_cache_stages,
                target=RUNTIME_STAGE,
            )
            if not engine_result.ok:
                logger.warning(
                    f"Optimized build of {app_name} {version} failed, retrying without cache"
                )
                result.used_fallback = True
                engine_result = await self.engine.build_image(
                    app_dir, tags, target=RUNTIME_STAGE, no_cache=True
                )
        else:
            engine_result = await self.engine.build_image(app_dir, tags, target=RUNTIME_STAGE)

        result.docker_build_ms = engine_result.duration_ms
        result.total_ms = int((time.monotonic() - started) * 1000)

        if not engine_result.ok:
            diagnostics = self._diagnostics(engine_result)
            result.error = BuildFailure(
                f"Image build failed for {app_name} {version}: {engine_result.describe()[:200]}",
                diagnostics=diagnostics,
            )
            logger.error(f"Build failed for {app_name} {version}")
            return result

        result.success = True
        result.image = container_name
        logger.info(f"Built {app_name} {version} in {result.docker_build_ms}ms")
        return result
