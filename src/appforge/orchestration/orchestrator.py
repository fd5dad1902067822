"""Improvement orchestrator: sequences every state-changing app operation.

One improvement cycle runs::

    snapshot -> generate -> write files -> detect changes -> plan
        -> build (bounded retries, optional automated fix) -> deploy -> commit

Any build or deploy failure restores the previous version's files and
leaves the ledger untouched. When the deployer had already stopped the old
container, the previous version is rebuilt and redeployed from its restored
files. A failed restore is fatal and is never reported as success.

The orchestrator is the only writer of ledger state.
"""

from __future__ import annotations

import logging
import re
import shutil
import socket
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from appforge.backup.manager import BackupManager, RestoreResult
from appforge.build.builder import BuildResult, ContainerBuilder, image_tags
from appforge.build.strategy import BuildPlan, select_build_tier
from appforge.config.settings import Settings, get_settings
from appforge.content.parser import parse_generated_output, write_generated_files
from appforge.content.store import ContentStore, FileDiff, diff_fingerprints
from appforge.deploy.blue_green import BlueGreenDeployer, DeploymentAttempt
from appforge.deploy.health import HealthChecker
from appforge.engine.docker import ContainerEngine, DockerEngine, EngineResult
from appforge.errors import (
    AppExistsError,
    AppForgeError,
    BackupFailure,
    GenerationError,
    LedgerWriteFailure,
    ValidationError,
)
from appforge.generation.analysis import AppAnalyzer
from appforge.generation.client import Completion, ContentGenerator
from appforge.generation.fixer import BuildFixer, LLMBuildFixer
from appforge.generation.fixes import apply_post_generation_fixes
from appforge.generation.prompts import generation_prompt, improvement_prompt
from appforge.ledger.models import (
    INITIAL_VERSION,
    App,
    DockerStatus,
    Performance,
    Version,
)
from appforge.ledger.store import VersionLedger, container_name_for
from appforge.utils.validation import generate_app_name, sanitize_name

from .locks import AppLockRegistry

logger = logging.getLogger(__name__)


class CycleStage(str, Enum):
    """Stages of an orchestrated operation."""

    IDLE = "idle"
    ANALYZING = "analyzing"
    SNAPSHOTTING = "snapshotting"
    GENERATING = "generating"
    WRITING_FILES = "writing_files"
    DETECTING_CHANGES = "detecting_changes"
    PLANNING = "planning"
    BUILDING = "building"
    FIXING = "fixing"
    DEPLOYING = "deploying"
    COMMITTING = "committing"
    RESTORING = "restoring"
    RECOVERING = "recovering"
    NO_CHANGES = "no_changes"
    COMPLETE = "complete"
    ROLLED_BACK = "rolled_back"


@dataclass
class CycleResult:
    """Result of one orchestrated operation."""

    success: bool
    stage_reached: CycleStage
    app_name: str
    version: str | None = None
    previous_version: str | None = None
    url: str | None = None
    error: str | None = None
    error_code: str | None = None
    fatal: bool = False
    diff: FileDiff | None = None
    build: BuildResult | None = None
    deployment: DeploymentAttempt | None = None
    restore: RestoreResult | None = None
    recovered: bool | None = None
    attempts: int = 0
    skipped_files: list[tuple[str, str]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class BuildOutcome:
    """Build result after bounded retries, plus files the fixer touched."""

    result: BuildResult
    attempts: int
    fixed_written: set[str] = field(default_factory=set)
    fixed_deleted: set[str] = field(default_factory=set)


@dataclass
class VersionDiff:
    """Comparison of two recorded versions."""

    app_name: str
    from_version: Version
    to_version: Version
    files: FileDiff

    @property
    def build_time_delta_ms(self) -> int | None:
        before = _docker_build_time(self.from_version)
        after = _docker_build_time(self.to_version)
        if not before or not after:
            return None
        return after - before


def _docker_build_time(version: Version) -> int:
    metrics = version.performance.build_metrics
    return metrics.docker_build_time if metrics else 0


# Label and optimized flag per benchmark run; the third run reuses a warm cache
BENCHMARK_RUNS = (("legacy", False), ("optimized", True), ("cached", True))


@dataclass
class BenchmarkRun:
    """One fresh app created with a single build strategy."""

    label: str
    app_name: str
    optimized: bool
    success: bool
    total_ms: int
    docker_build_ms: int = 0
    app_type: str | None = None
    error: str | None = None


@dataclass
class BenchmarkReport:
    """Build timings of the same prompt under each build strategy."""

    prompt: str
    runs: list[BenchmarkRun] = field(default_factory=list)

    def run(self, label: str) -> BenchmarkRun | None:
        return next((run for run in self.runs if run.label == label), None)

    def speedup(self, label: str, baseline: str = "legacy") -> float | None:
        """Baseline image build time divided by the labelled run's."""
        base, other = self.run(baseline), self.run(label)
        if base is None or other is None:
            return None
        if not base.docker_build_ms or not other.docker_build_ms:
            return None
        return base.docker_build_ms / other.docker_build_ms


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether a local TCP port can be bound."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class Orchestrator:
    """Owns the ledger, backups, builder and deployer for all apps.

    Every mutating entry point holds the app's lock for its whole duration.
    """

    def __init__(
        self,
        ledger: VersionLedger,
        engine: ContainerEngine,
        generator: ContentGenerator | None = None,
        settings: Settings | None = None,
        fixer: BuildFixer | None = None,
        backups: BackupManager | None = None,
        builder: ContainerBuilder | None = None,
        deployer: BlueGreenDeployer | None = None,
        locks: AppLockRegistry | None = None,
        port_check: Callable[[int], bool] | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            ledger: Opened version ledger.
            engine: Container engine.
            generator: Content-generation collaborator.
            settings: Settings; defaults to the cached application settings.
            fixer: Automated build fixer; defaults to one backed by ``generator``.
            backups: Backup manager override.
            builder: Container builder override.
            deployer: Blue-green deployer override.
            locks: Per-app lock registry (share one across orchestrators).
            port_check: Free-port check used when allocating app ports.
        """
        self.settings = settings or get_settings()
        self.ledger = ledger
        self.engine = engine
        self.generator = generator
        self.fixer = fixer if fixer is not None else (LLMBuildFixer(generator) if generator else None)
        self.analyzer = AppAnalyzer(generator)
        self.backups = backups or BackupManager(self.settings.backups_dir, self.settings.apps_dir)
        self.builder = builder or ContainerBuilder(
            engine,
            container_port=self.settings.container_port,
            optimized=self.settings.optimized_builds,
            diagnostics_max_chars=self.settings.diagnostics_max_chars,
        )
        self.deployer = deployer or BlueGreenDeployer(
            engine,
            HealthChecker(
                engine,
                host=self.settings.health_host,
                timeout=self.settings.health_timeout_seconds,
                startup_grace=self.settings.health_startup_grace_seconds,
                poll_interval=self.settings.health_poll_interval_seconds,
            ),
            container_port=self.settings.container_port,
            temp_port_offset=self.settings.temp_port_offset,
        )
        self.locks = locks or AppLockRegistry()
        self.port_check = port_check or is_port_free

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        generator: ContentGenerator | None = None,
    ) -> Orchestrator:
        """Wire a Docker-backed orchestrator from settings."""
        settings = settings or get_settings()
        engine = DockerEngine(
            binary=settings.docker_binary,
            build_timeout=settings.build_timeout_seconds,
            command_timeout=settings.engine_timeout_seconds,
            buildkit=settings.optimized_builds,
        )
        ledger = VersionLedger(settings.ledger_path, base_port=settings.base_port).open()
        return cls(ledger, engine, generator=generator, settings=settings)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def store_for(self, app_name: str) -> ContentStore:
        return ContentStore(self.settings.app_dir(app_name))

    def url_for(self, port: int | None) -> str | None:
        return f"http://{self.settings.health_host}:{port}" if port else None

    @staticmethod
    def _enter(result: CycleResult, stage: CycleStage) -> None:
        result.stage_reached = stage
        logger.info(
            f"{result.app_name}: {stage.value}",
            extra={"app": result.app_name, "stage": stage.value},
        )

    @staticmethod
    def _fail(
        result: CycleResult,
        error: AppForgeError | str,
        fatal: bool = False,
    ) -> CycleResult:
        result.success = False
        if isinstance(error, AppForgeError):
            result.error = error.message
            result.error_code = error.code
        else:
            result.error = error
        result.fatal = result.fatal or fatal
        log = logger.critical if result.fatal else logger.error
        log(
            f"{result.app_name} failed during {result.stage_reached.value}: {result.error}",
            extra={"app": result.app_name, "stage": result.stage_reached.value},
        )
        return result

    async def _complete(self, prompt: str) -> Completion:
        if self.generator is None:
            raise GenerationError("No content generator configured")
        return await self.generator.complete(prompt)

    async def _build_with_retries(
        self,
        result: CycleResult,
        app_name: str,
        version: str,
        container_name: str,
        plan: BuildPlan,
        files: Iterable[str],
        use_fixer: bool = True,
        touched: set[str] | None = None,
        builder: ContainerBuilder | None = None,
    ) -> BuildOutcome:
        """Build with a bounded number of attempts.

        Between attempts the automated fixer, when available, may edit the
        app's files; the next attempt re-plans with those paths included.
        Paths the fixer writes are added to ``touched`` as soon as they land.
        """
        builder = builder or self.builder
        store = self.store_for(app_name)
        app_dir = self.settings.app_dir(app_name)
        max_attempts = self.settings.max_build_attempts
        outcome: BuildOutcome | None = None
        written: set[str] = set()
        deleted: set[str] = set()

        for attempt in range(1, max_attempts + 1):
            self._enter(result, CycleStage.BUILDING)
            logger.info(
                f"Build attempt {attempt}/{max_attempts} for {app_name} {version}",
                extra={"app": app_name, "version": version, "attempt": attempt},
            )
            build = await builder.build(app_name, version, container_name, app_dir, plan)
            outcome = BuildOutcome(build, attempt, written, deleted)
            if build.success or attempt == max_attempts:
                break

            if use_fixer and self.fixer is not None:
                self._enter(result, CycleStage.FIXING)
                fix = await self.fixer.fix(
                    app_name,
                    store,
                    build.error.message if build.error else "build failed",
                    build.diagnostics,
                    sorted(set(files) | written),
                )
                if touched is not None:
                    touched |= set(fix.written)
                if fix.applied:
                    written |= set(fix.written)
                    deleted |= set(fix.deleted)
                    plan = select_build_tier(plan.change_set | set(fix.touched))
                    logger.info(f"Applied automated fix for {app_name}: {fix.description}")
                else:
                    logger.warning(f"No automated fix for {app_name}: {fix.error}")

        if outcome.result.error is not None:
            outcome.result.error.attempts = outcome.attempts
            outcome.result.error.details["attempts"] = outcome.attempts
        result.build = outcome.result
        result.attempts = outcome.attempts
        return outcome

    def _restore(
        self,
        result: CycleResult,
        version: Version,
        remove_paths: Iterable[str] = (),
    ) -> bool:
        """Restore a version's files; a failure marks the result fatal."""
        self._enter(result, CycleStage.RESTORING)
        restore = self.backups.restore(result.app_name, version, remove_paths=remove_paths)
        result.restore = restore
        if not restore.success:
            result.fatal = True
            logger.critical(
                f"Restore of {result.app_name} {version.version} failed; manual intervention "
                f"required: {restore.error.message if restore.error else 'unknown error'}"
            )
        return restore.success

    async def _recover(
        self,
        result: CycleResult,
        version: Version,
        port: int,
        running_container: str | None = None,
    ) -> bool:
        """Rebuild and redeploy a version from its restored files.

        Used when the old container was already stopped, or when a deployed
        version could not be committed.
        """
        self._enter(result, CycleStage.RECOVERING)
        container_name = version.container_name or container_name_for(
            result.app_name, version.version
        )
        plan = select_build_tier((), first_build=True)
        build = await self.builder.build(
            result.app_name,
            version.version,
            container_name,
            self.settings.app_dir(result.app_name),
            plan,
        )
        if not build.success:
            logger.critical(
                f"Could not rebuild {result.app_name} {version.version} during recovery: "
                f"{build.error.message if build.error else 'unknown error'}"
            )
            result.recovered = False
            return False

        attempt = await self.deployer.deploy(
            result.app_name,
            version.version,
            container_name,
            build.image or container_name,
            port,
            previous_container=running_container,
        )
        result.recovered = attempt.succeeded
        if attempt.succeeded:
            logger.info(f"Recovered {result.app_name} {version.version} on port {port}")
            if result.deployment is not None:
                result.deployment.rolled_back = True
        else:
            logger.critical(
                f"Could not redeploy {result.app_name} {version.version} during recovery: "
                f"{attempt.error.message if attempt.error else 'unknown error'}"
            )
        return attempt.succeeded

    async def _revert(
        self,
        result: CycleResult,
        previous: Version,
        port: int,
        remove_paths: Iterable[str],
        needs_recovery: bool,
        running_container: str | None = None,
    ) -> CycleResult:
        """Return the live directory and port to ``previous`` after a failure."""
        restored = self._restore(result, previous, remove_paths)
        if restored and needs_recovery:
            if not await self._recover(result, previous, port, running_container):
                result.fatal = True
        if restored and not result.fatal:
            result.stage_reached = CycleStage.ROLLED_BACK
        return result

    async def _abort(
        self,
        result: CycleResult,
        previous: Version,
        port: int,
        remove_paths: Iterable[str],
        error: Exception,
    ) -> CycleResult:
        """Fail a cycle on an unexpected error and put ``previous`` back in place."""
        stage = result.stage_reached
        self._fail(result, f"Unexpected error during {stage.value}: {error}")
        result.error_code = "INTERNAL"
        needs_recovery = False
        if stage in (CycleStage.DEPLOYING, CycleStage.COMMITTING) and previous.container_name:
            state = await self.engine.inspect_container(previous.container_name)
            needs_recovery = not state.running
        return await self._revert(result, previous, port, remove_paths, needs_recovery)

    def _snapshot_new_version(self, app_name: str, version: str, files: Iterable[str]) -> str | None:
        try:
            return str(self.backups.snapshot(app_name, version, files))
        except BackupFailure as e:
            logger.warning(f"Could not snapshot {app_name} {version}: {e.message}")
            return None

    async def _app_containers(self, app_name: str) -> set[str]:
        """Names of every container belonging to an app, recorded or orphaned."""
        # Version containers are ``<app>-v<major>-<minor>-<patch>``; a bare prefix
        # match would also catch apps whose name extends this one
        pattern = re.compile(rf"^{re.escape(app_name)}-v\d+-\d+-\d+$")
        names = {
            name
            for name in await self.engine.containers_named(f"{app_name}-")
            if pattern.match(name)
        }
        app = self.ledger.get_app(app_name)
        if app is not None:
            names |= {v.container_name for v in app.versions if v.container_name}
        return names

    def _auto_prune(self, app_name: str, active_version: str) -> None:
        if self.settings.auto_prune_backups:
            self.backups.prune(
                app_name, keep=self.settings.backup_retention, protect={active_version}
            )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_app(
        self, prompt: str, name: str | None = None, optimized: bool | None = None
    ) -> CycleResult:
        """Generate, build and deploy a new app at ``v1.0.0``.

        The initial version is committed even when the build or deployment
        fails; it is then inactive with ``dockerStatus`` ``failed``.

        Args:
            prompt: Description of the app.
            name: App name; derived from the prompt when omitted.
            optimized: Build strategy for this app's builds in this call;
                ``None`` uses the configured one.
        """
        app_name = sanitize_name(name) if name else generate_app_name(prompt)
        async with self.locks.hold(app_name):
            return await self._create_app(app_name, prompt, self.builder_for(optimized))

    def builder_for(self, optimized: bool | None) -> ContainerBuilder:
        """The configured builder, or a copy using the other build strategy."""
        if optimized is None or optimized == self.builder.optimized:
            return self.builder
        return ContainerBuilder(
            self.engine,
            container_port=self.builder.container_port,
            optimized=optimized,
            diagnostics_max_chars=self.builder.diagnostics_max_chars,
        )

    async def _create_app(
        self, app_name: str, prompt: str, builder: ContainerBuilder
    ) -> CycleResult:
        result = CycleResult(success=False, stage_reached=CycleStage.IDLE, app_name=app_name)
        if self.ledger.get_app(app_name) is not None:
            return self._fail(result, AppExistsError(app_name))

        app_dir = self.settings.app_dir(app_name)
        store = self.store_for(app_name)

        self._enter(result, CycleStage.ANALYZING)
        analysis = await self.analyzer.analyze(prompt)
        result.metadata["analysis"] = analysis.model_dump()

        self._enter(result, CycleStage.GENERATING)
        try:
            completion = await self._complete(generation_prompt(prompt, analysis))
        except GenerationError as e:
            return self._fail(result, e)

        self._enter(result, CycleStage.WRITING_FILES)
        output = parse_generated_output(completion.content)
        report = write_generated_files(store, output)
        result.skipped_files = report.skipped
        if not report.written:
            shutil.rmtree(app_dir, ignore_errors=True)
            return self._fail(result, "Generation produced no usable files")

        fixes = apply_post_generation_fixes(store, analysis)
        files = sorted(set(report.written) | set(fixes.touched))

        try:
            port = self.ledger.allocate_port(self.port_check)
        except (ValidationError, LedgerWriteFailure) as e:
            shutil.rmtree(app_dir, ignore_errors=True)
            return self._fail(result, e, fatal=isinstance(e, LedgerWriteFailure))
        logger.info(f"Using port {port} for {app_name}", extra={"app": app_name, "port": port})

        version = INITIAL_VERSION
        container_name = container_name_for(app_name, version)
        result.version = version

        self._enter(result, CycleStage.PLANNING)
        plan = select_build_tier(files, first_build=True)
        outcome = await self._build_with_retries(
            result, app_name, version, container_name, plan, files, builder=builder
        )
        files = sorted((set(files) | outcome.fixed_written) - outcome.fixed_deleted)

        deployed = False
        docker_error = outcome.result.error.message if outcome.result.error else None
        if outcome.result.success:
            self._enter(result, CycleStage.DEPLOYING)
            attempt = await self.deployer.deploy(
                app_name,
                version,
                container_name,
                outcome.result.image or container_name,
                port,
            )
            result.deployment = attempt
            deployed = attempt.succeeded
            if not deployed and attempt.error is not None:
                docker_error = attempt.error.message

        file_hashes = store.fingerprint(files)
        record = Version(
            version=version,
            prompt=prompt,
            changes_explanation=output.explanation,
            container_name=container_name,
            files=files,
            file_hashes=file_hashes,
            performance=Performance(
                latency=completion.latency_ms,
                tokens=completion.usage,
                build_metrics=outcome.result.metrics(),
            ),
            is_active=deployed,
            docker_status=DockerStatus.RUNNING if deployed else DockerStatus.FAILED,
            docker_error=docker_error,
            attempts=outcome.attempts,
            added_files=files,
            backup_path=self._snapshot_new_version(app_name, version, files),
        )

        self._enter(result, CycleStage.COMMITTING)
        try:
            self.ledger.register_app(App(name=app_name, port=port), record)
        except LedgerWriteFailure as e:
            return self._fail(result, e, fatal=True)
        except AppExistsError as e:
            return self._fail(result, e)

        result.url = self.url_for(port)
        result.diff = diff_fingerprints({}, file_hashes)
        if not deployed:
            return self._fail(result, docker_error or "Deployment failed")

        result.success = True
        self._enter(result, CycleStage.COMPLETE)
        return result

    async def benchmark(
        self, prompt: str, name: str | None = None, cleanup: bool = False
    ) -> BenchmarkReport:
        """Create the same prompt once per build strategy and compare timings.

        Runs a legacy build, an optimized build, then a second optimized
        build that profits from the cache the first one left behind. Each
        run is a separate app named ``<base>-<label>``; a leftover app of
        that name from an earlier benchmark is removed first.
        """
        base = sanitize_name(name) if name else generate_app_name(prompt)
        report = BenchmarkReport(prompt=prompt)

        for label, optimized in BENCHMARK_RUNS:
            app_name = f"{base}-{label}"
            if self.ledger.get_app(app_name) is not None:
                logger.info(f"Removing previous benchmark app {app_name}")
                await self.remove_app(app_name)

            logger.info(f"Benchmark run {label} ({'optimized' if optimized else 'legacy'} build)")
            started = time.monotonic()
            result = await self.create_app(prompt, name=app_name, optimized=optimized)
            run = BenchmarkRun(
                label=label,
                app_name=result.app_name,
                optimized=optimized,
                success=result.success,
                total_ms=int((time.monotonic() - started) * 1000),
                error=result.error,
            )
            if result.build is not None:
                metrics = result.build.metrics()
                run.docker_build_ms = metrics.docker_build_time
                run.optimized = metrics.optimized
                run.app_type = metrics.app_type
            report.runs.append(run)

        if cleanup:
            for run in report.runs:
                if self.ledger.get_app(run.app_name) is not None:
                    await self.remove_app(run.app_name)
        return report

    # ------------------------------------------------------------------
    # Improve
    # ------------------------------------------------------------------

    async def improve(self, app_name: str, intent: str) -> CycleResult:
        """Run one improvement cycle for an app."""
        async with self.locks.hold(app_name):
            return await self._improve(app_name, intent)

    async def _improve(self, app_name: str, intent: str) -> CycleResult:
        result = CycleResult(success=False, stage_reached=CycleStage.IDLE, app_name=app_name)
        try:
            app = self.ledger.require_app(app_name)
            current = self.ledger.current_version(app_name)
        except AppForgeError as e:
            return self._fail(result, e)
        result.previous_version = current.version
        store = self.store_for(app_name)

        # Nothing in the live directory changes before the snapshot exists
        self._enter(result, CycleStage.SNAPSHOTTING)
        try:
            self.backups.snapshot(app_name, current.version, current.files)
        except BackupFailure as e:
            return self._fail(result, e, fatal=True)

        added_by_cycle: set[str] = set()
        try:
            return await self._apply_improvement(
                result, app, current, intent, store, added_by_cycle
            )
        except Exception as e:
            logger.error(f"Improvement of {app_name} failed: {e}", exc_info=True)
            return await self._abort(result, current, app.port, added_by_cycle, e)

    async def _apply_improvement(
        self,
        result: CycleResult,
        app: App,
        current: Version,
        intent: str,
        store: ContentStore,
        added_by_cycle: set[str],
    ) -> CycleResult:
        """Everything after the snapshot; ``added_by_cycle`` collects new paths."""
        app_name = app.name
        self._enter(result, CycleStage.GENERATING)
        contents = store.read_many(current.files)
        try:
            completion = await self._complete(
                improvement_prompt(
                    current.prompt, intent, current.files, contents, current.improvements
                )
            )
        except GenerationError as e:
            return self._fail(result, e)

        self._enter(result, CycleStage.WRITING_FILES)
        output = parse_generated_output(completion.content)
        report = write_generated_files(store, output)
        result.skipped_files = report.skipped
        added_by_cycle |= set(report.written) - set(current.files)

        self._enter(result, CycleStage.DETECTING_CHANGES)
        files = sorted(set(current.files) | set(report.written))
        diff = diff_fingerprints(current.file_hashes, store.fingerprint(files))
        result.diff = diff
        if diff.is_empty:
            result.stage_reached = CycleStage.NO_CHANGES
            return self._fail(result, "No changes detected; the improvement was not applied")
        logger.info(f"Changes for {app_name}: {diff.summary()}")

        version = self.ledger.next_version_for(app_name, diff.all_paths)
        container_name = container_name_for(app_name, version)
        result.version = version

        self._enter(result, CycleStage.PLANNING)
        plan = select_build_tier(diff.all_paths)
        outcome = await self._build_with_retries(
            result,
            app_name,
            version,
            container_name,
            plan,
            files,
            touched=added_by_cycle,
        )

        if not outcome.result.success:
            self._fail(result, outcome.result.error or "Build failed")
            return await self._revert(
                result, current, app.port, added_by_cycle, needs_recovery=False
            )

        self._enter(result, CycleStage.DEPLOYING)
        attempt = await self.deployer.deploy(
            app_name,
            version,
            container_name,
            outcome.result.image or container_name,
            app.port,
            previous_container=current.container_name,
        )
        result.deployment = attempt
        if not attempt.succeeded:
            self._fail(result, attempt.error or "Deployment failed")
            return await self._revert(
                result,
                current,
                app.port,
                added_by_cycle,
                needs_recovery=attempt.needs_recovery,
            )

        files = sorted((set(files) | outcome.fixed_written) - outcome.fixed_deleted)
        file_hashes = store.fingerprint(files)
        final_diff = diff_fingerprints(current.file_hashes, file_hashes)
        result.diff = final_diff

        record = Version(
            version=version,
            prompt=current.prompt,
            improvements=[*current.improvements, intent],
            changes_explanation=output.explanation,
            container_name=container_name,
            files=files,
            file_hashes=file_hashes,
            performance=Performance(
                latency=completion.latency_ms,
                tokens=completion.usage,
                build_metrics=outcome.result.metrics(),
            ),
            docker_status=DockerStatus.RUNNING,
            attempts=outcome.attempts,
            parent_version=current.version,
            changed_files=sorted(final_diff.changed),
            added_files=sorted(final_diff.added),
            removed_files=sorted(final_diff.removed),
            backup_path=self._snapshot_new_version(app_name, version, files),
        )

        self._enter(result, CycleStage.COMMITTING)
        try:
            self.ledger.commit(app_name, record)
        except LedgerWriteFailure as e:
            # The new container runs but the ledger does not know it
            self._fail(result, e, fatal=True)
            await self._revert(
                result,
                current,
                app.port,
                added_by_cycle,
                needs_recovery=True,
                running_container=container_name,
            )
            result.fatal = True
            return result

        self._auto_prune(app_name, version)
        result.success = True
        result.url = self.url_for(app.port)
        self._enter(result, CycleStage.COMPLETE)
        return result

    # ------------------------------------------------------------------
    # Rollback / retry
    # ------------------------------------------------------------------

    async def rollback(self, app_name: str, target_version: str) -> CycleResult:
        """Make an earlier version active again, rebuilt from its snapshot."""
        async with self.locks.hold(app_name):
            return await self._rollback(app_name, target_version)

    async def _rollback(self, app_name: str, target_version: str) -> CycleResult:
        result = CycleResult(success=False, stage_reached=CycleStage.IDLE, app_name=app_name)
        try:
            app = self.ledger.require_app(app_name)
            current = self.ledger.current_version(app_name)
            target = self.ledger.get_version(app_name, target_version)
        except AppForgeError as e:
            return self._fail(result, e)
        result.previous_version = current.version
        result.version = target.version

        if target.version == current.version:
            result.success = True
            result.url = self.url_for(app.port)
            result.metadata["message"] = f"{target.version} is already the current version"
            result.stage_reached = CycleStage.COMPLETE
            return result

        self._enter(result, CycleStage.SNAPSHOTTING)
        try:
            self.backups.snapshot(app_name, current.version, current.files)
        except BackupFailure as e:
            return self._fail(result, e, fatal=True)

        target_only = set(target.files) - set(current.files)
        try:
            return await self._apply_rollback(result, app, current, target, target_only)
        except Exception as e:
            logger.error(f"Rollback of {app_name} failed: {e}", exc_info=True)
            return await self._abort(result, current, app.port, target_only, e)

    async def _apply_rollback(
        self,
        result: CycleResult,
        app: App,
        current: Version,
        target: Version,
        target_only: set[str],
    ) -> CycleResult:
        app_name = app.name
        current_only = set(current.files) - set(target.files)

        self._enter(result, CycleStage.RESTORING)
        restore = self.backups.restore(app_name, target, remove_paths=current_only)
        if not restore.success:
            self._fail(result, restore.error or "Restore failed")
            return await self._revert(
                result, current, app.port, target_only, needs_recovery=False
            )

        store = self.store_for(app_name)
        self._enter(result, CycleStage.DETECTING_CHANGES)
        diff = diff_fingerprints(current.file_hashes, store.fingerprint(target.files))
        result.diff = diff

        self._enter(result, CycleStage.PLANNING)
        plan = select_build_tier(diff.all_paths)
        container_name = container_name_for(app_name, target.version)
        outcome = await self._build_with_retries(
            result,
            app_name,
            target.version,
            container_name,
            plan,
            target.files,
            use_fixer=False,
        )
        if not outcome.result.success:
            self._fail(result, outcome.result.error or "Build failed")
            return await self._revert(
                result, current, app.port, target_only, needs_recovery=False
            )

        self._enter(result, CycleStage.DEPLOYING)
        attempt = await self.deployer.deploy(
            app_name,
            target.version,
            container_name,
            outcome.result.image or container_name,
            app.port,
            previous_container=current.container_name,
        )
        result.deployment = attempt
        if not attempt.succeeded:
            self._fail(result, attempt.error or "Deployment failed")
            return await self._revert(
                result,
                current,
                app.port,
                target_only,
                needs_recovery=attempt.needs_recovery,
            )

        self._enter(result, CycleStage.COMMITTING)
        try:
            self.ledger.activate(app_name, target.version, container_name)
        except LedgerWriteFailure as e:
            self._fail(result, e, fatal=True)
            await self._revert(
                result,
                current,
                app.port,
                target_only,
                needs_recovery=True,
                running_container=container_name,
            )
            result.fatal = True
            return result

        self._auto_prune(app_name, target.version)
        result.success = True
        result.url = self.url_for(app.port)
        self._enter(result, CycleStage.COMPLETE)
        return result

    async def retry_build(self, app_name: str) -> CycleResult:
        """Rebuild and redeploy the current version in place.

        The version's files are not changed, so the automated fixer is not
        used; the recorded fingerprints stay accurate.
        """
        async with self.locks.hold(app_name):
            return await self._retry_build(app_name)

    async def _retry_build(self, app_name: str) -> CycleResult:
        result = CycleResult(success=False, stage_reached=CycleStage.IDLE, app_name=app_name)
        try:
            app = self.ledger.require_app(app_name)
            current = self.ledger.current_version(app_name)
        except AppForgeError as e:
            return self._fail(result, e)
        result.version = current.version
        result.previous_version = current.version

        if not self.settings.app_dir(app_name).is_dir():
            return self._fail(result, f"App directory not found: {self.settings.app_dir(app_name)}")

        port = app.port
        if port is None:
            try:
                port = self.ledger.allocate_port(self.port_check)
                self.ledger.set_port(app_name, port)
            except (ValidationError, LedgerWriteFailure) as e:
                return self._fail(result, e, fatal=isinstance(e, LedgerWriteFailure))

        container_name = container_name_for(app_name, current.version)
        self._enter(result, CycleStage.PLANNING)
        plan = select_build_tier((), first_build=True)
        outcome = await self._build_with_retries(
            result,
            app_name,
            current.version,
            container_name,
            plan,
            current.files,
            use_fixer=False,
        )

        error = outcome.result.error.message if outcome.result.error else None
        deployed = False
        if outcome.result.success:
            self._enter(result, CycleStage.DEPLOYING)
            attempt = await self.deployer.deploy(
                app_name,
                current.version,
                container_name,
                outcome.result.image or container_name,
                port,
            )
            result.deployment = attempt
            deployed = attempt.succeeded
            if not deployed and attempt.error is not None:
                error = attempt.error.message

        if deployed:
            changes = {"is_active": True, "docker_status": DockerStatus.RUNNING, "docker_error": None}
        elif result.deployment is None:
            # The build failed, so a container from an earlier run is untouched
            state = await self.engine.inspect_container(container_name)
            status = DockerStatus.RUNNING if state.running else DockerStatus.FAILED
            changes = {"docker_status": status, "docker_error": error}
        else:
            changes = {"is_active": False, "docker_status": DockerStatus.FAILED, "docker_error": error}

        self._enter(result, CycleStage.COMMITTING)
        try:
            self.ledger.update_version(
                app_name,
                current.version,
                attempts=current.attempts + outcome.attempts,
                container_name=container_name,
                **changes,
            )
        except LedgerWriteFailure as e:
            return self._fail(result, e, fatal=True)

        if not deployed:
            return self._fail(result, error or "Retry failed")
        result.success = True
        result.url = self.url_for(port)
        self._enter(result, CycleStage.COMPLETE)
        return result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def stop_app(self, app_name: str) -> CycleResult:
        """Stop every container of an app and mark the current version stopped."""
        async with self.locks.hold(app_name):
            result = CycleResult(success=False, stage_reached=CycleStage.IDLE, app_name=app_name)
            try:
                current = self.ledger.current_version(app_name)
            except AppForgeError as e:
                return self._fail(result, e)
            result.version = current.version

            names = await self._app_containers(app_name)
            failures = []
            for name in sorted(names):
                state = await self.engine.inspect_container(name)
                if not state.running:
                    continue
                stop = await self.engine.stop_container(name)
                if not stop.ok:
                    failures.append(f"{name}: {stop.describe()}")

            if failures:
                return self._fail(result, "Could not stop " + "; ".join(failures))
            try:
                self.ledger.update_version(
                    app_name, current.version, docker_status=DockerStatus.STOPPED
                )
            except LedgerWriteFailure as e:
                return self._fail(result, e, fatal=True)

            logger.info(f"Stopped {app_name}")
            result.success = True
            result.stage_reached = CycleStage.COMPLETE
            return result

    async def remove_app(self, app_name: str) -> CycleResult:
        """Remove containers, volumes, images, files, snapshots and the ledger entry."""
        async with self.locks.hold(app_name):
            result = await self._remove_app(app_name)
        if result.success:
            self.locks.discard(app_name)
        return result

    async def _remove_app(self, app_name: str) -> CycleResult:
        result = CycleResult(success=False, stage_reached=CycleStage.IDLE, app_name=app_name)
        try:
            app = self.ledger.require_app(app_name)
        except AppForgeError as e:
            return self._fail(result, e)

        names = await self._app_containers(app_name)
        volumes: set[str] = set()
        for name in sorted(names):
            state = await self.engine.inspect_container(name)
            if not state.exists:
                continue
            volumes.update(state.mounts)
            removed = await self.engine.remove_container(name, force=True)
            if not removed.ok:
                logger.warning(f"Could not remove container {name}: {removed.describe()}")

        for volume in sorted(volumes):
            removed = await self.engine.remove_volume(volume)
            if removed.ok:
                logger.info(f"Removed volume {volume}")
            else:
                logger.warning(f"Could not remove volume {volume}: {removed.describe()}")

        images: set[str] = set()
        for record in app.versions:
            images.update(
                image_tags(
                    app_name,
                    record.version,
                    record.container_name or container_name_for(app_name, record.version),
                )
            )
        for image in sorted(images):
            removed = await self.engine.remove_image(image)
            if not removed.ok:
                logger.debug(f"Image {image} not removed: {removed.describe()}")

        app_dir = self.settings.app_dir(app_name)
        if app_dir.resolve().is_relative_to(Path(self.settings.apps_dir).resolve()):
            shutil.rmtree(app_dir, ignore_errors=True)
        self.backups.delete_all(app_name)

        try:
            self.ledger.remove_app(app_name)
        except LedgerWriteFailure as e:
            return self._fail(result, e, fatal=True)

        logger.info(f"Removed {app_name} completely")
        result.success = True
        result.stage_reached = CycleStage.COMPLETE
        return result

    async def prune_backups(self, app_name: str, keep: int | None = None) -> list[str]:
        """Apply snapshot retention to an app; the active snapshot is kept."""
        async with self.locks.hold(app_name):
            current = self.ledger.current_version(app_name)
            return self.backups.prune(
                app_name,
                keep=keep if keep is not None else self.settings.backup_retention,
                protect={current.version},
            )

    async def clear_cache(self, system: bool = False) -> EngineResult:
        """Prune the engine's build cache.

        With ``system``, every unused image, container, network and volume on
        the host is removed afterwards, not only ones belonging to apps.
        """
        result = await self.engine.prune_build_cache()
        if not result.ok:
            logger.warning(f"Could not clear build cache: {result.describe()}")
            return result
        logger.info("Cleared build cache")
        if system:
            result = await self.engine.prune_system()
            if result.ok:
                logger.info("Pruned unused engine resources")
            else:
                logger.warning(f"Could not prune engine resources: {result.describe()}")
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_apps(self) -> list[App]:
        return self.ledger.apps()

    def list_versions(self, app_name: str) -> list[Version]:
        """Versions of an app, newest first."""
        app = self.ledger.require_app(app_name)
        return list(reversed(app.versions))

    def diff(self, app_name: str, from_version: str, to_version: str) -> VersionDiff:
        """Compare the recorded fingerprints of two versions."""
        before = self.ledger.get_version(app_name, from_version)
        after = self.ledger.get_version(app_name, to_version)
        return VersionDiff(
            app_name=app_name,
            from_version=before,
            to_version=after,
            files=diff_fingerprints(before.file_hashes, after.file_hashes),
        )
