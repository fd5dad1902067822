"""Blue-green deployer.

Starts the new version next to the old one on a temporary port, validates
it, then re-binds it to the production port. The engine fixes port
mappings at container start, so the swap is stop-old, re-run-new.

State machine per attempt::

    BUILDING -> STARTED_ON_TEMP_PORT -> HEALTH_CHECKING -> SWAPPING | FAILED
    SWAPPING -> SWAPPED -> FINAL_HEALTH_CHECKING -> DEPLOYED | FAILED

The previous container is stopped but kept until the final health check
passes, and is never restarted automatically. Recovering from a failure
after the swap is the orchestrator's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from appforge.engine.docker import ContainerEngine
from appforge.errors import AppForgeError, HealthCheckFailure, ValidationError
from appforge.ledger.models import utcnow
from appforge.utils.validation import validate_port

from .health import HealthChecker, HealthResult

logger = logging.getLogger(__name__)

MAX_CAPTURED_LOG_CHARS = 2000


class DeployState(str, Enum):
    """States of one deployment attempt."""

    BUILDING = "building"
    STARTED_ON_TEMP_PORT = "started_on_temp_port"
    HEALTH_CHECKING = "health_checking"
    SWAPPING = "swapping"
    SWAPPED = "swapped"
    FINAL_HEALTH_CHECKING = "final_health_checking"
    DEPLOYED = "deployed"
    FAILED = "failed"


@dataclass
class DeploymentAttempt:
    """Ephemeral record of one blue-green cycle."""

    app_name: str
    version: str
    container_name: str
    port: int
    temp_port: int
    previous_container: str | None = None
    state: DeployState = DeployState.BUILDING
    transitions: list[tuple[DeployState, datetime]] = field(default_factory=list)
    temp_health: HealthResult | None = None
    final_health: HealthResult | None = None
    old_container_stopped: bool = False
    rolled_back: bool = False
    error: AppForgeError | None = None
    container_logs: str = ""
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    def transition(self, state: DeployState) -> None:
        self.state = state
        self.transitions.append((state, utcnow()))
        logger.debug(f"{self.container_name}: {state.value}")

    @property
    def succeeded(self) -> bool:
        return self.state is DeployState.DEPLOYED

    @property
    def needs_recovery(self) -> bool:
        """True when the attempt failed after taking the old version down."""
        return self.state is DeployState.FAILED and self.old_container_stopped


class BlueGreenDeployer:
    """Runs deployment attempts against a container engine."""

    def __init__(
        self,
        engine: ContainerEngine,
        health_checker: HealthChecker,
        container_port: int = 3000,
        temp_port_offset: int = 1000,
    ):
        self.engine = engine
        self.health_checker = health_checker
        self.container_port = container_port
        self.temp_port_offset = temp_port_offset

    async def deploy(
        self,
        app_name: str,
        version: str,
        container_name: str,
        image: str,
        port: int,
        previous_container: str | None = None,
    ) -> DeploymentAttempt:
        """Deploy ``image`` as ``container_name`` onto ``port``.

        Never raises for engine or health failures; inspect the returned
        attempt's ``state`` and ``error``.
        """
        attempt = DeploymentAttempt(
            app_name=app_name,
            version=version,
            container_name=container_name,
            port=port,
            temp_port=port + self.temp_port_offset,
            previous_container=previous_container,
        )
        attempt.transition(DeployState.BUILDING)

        try:
            validate_port(port)
            validate_port(attempt.temp_port)
        except ValidationError as e:
            return self._fail(attempt, e)

        await self._clear_stale(attempt)

        # Start alongside the old version
        run = await self.engine.run_container(
            image, container_name, attempt.temp_port, self.container_port
        )
        if not run.ok:
            await self._discard(container_name)
            return self._fail(
                attempt,
                HealthCheckFailure(
                    f"Could not start {container_name} on port {attempt.temp_port}: "
                    f"{run.describe()}",
                    container=container_name,
                    port=attempt.temp_port,
                ),
            )
        attempt.transition(DeployState.STARTED_ON_TEMP_PORT)
        logger.info(f"Started {container_name} on temporary port {attempt.temp_port}")

        attempt.transition(DeployState.HEALTH_CHECKING)
        attempt.temp_health = await self.health_checker.check(container_name, attempt.temp_port)
        if not attempt.temp_health.healthy:
            await self._capture_logs(attempt)
            await self._discard(container_name)
            return self._fail(
                attempt,
                HealthCheckFailure(
                    f"{container_name} failed health check on temporary port "
                    f"{attempt.temp_port}: {attempt.temp_health.error}",
                    container=container_name,
                    port=attempt.temp_port,
                ),
            )

        # Swap: take the old version off the port, re-bind the new one
        attempt.transition(DeployState.SWAPPING)
        if previous_container:
            stop = await self.engine.stop_container(previous_container)
            if not stop.ok:
                state = await self.engine.inspect_container(previous_container)
                if state.running:
                    await self._discard(container_name)
                    return self._fail(
                        attempt,
                        HealthCheckFailure(
                            f"Could not stop previous container {previous_container}: "
                            f"{stop.describe()}",
                            container=previous_container,
                            port=port,
                        ),
                    )
            attempt.old_container_stopped = True
            logger.info(f"Stopped previous container {previous_container}")

        await self._discard(container_name)
        rebind = await self.engine.run_container(image, container_name, port, self.container_port)
        if not rebind.ok:
            await self._discard(container_name)
            return self._fail(
                attempt,
                HealthCheckFailure(
                    f"Could not bind {container_name} to production port {port}: "
                    f"{rebind.describe()}",
                    container=container_name,
                    port=port,
                ),
            )
        attempt.transition(DeployState.SWAPPED)

        attempt.transition(DeployState.FINAL_HEALTH_CHECKING)
        attempt.final_health = await self.health_checker.check(container_name, port)
        if not attempt.final_health.healthy:
            await self._capture_logs(attempt)
            await self._discard(container_name)
            return self._fail(
                attempt,
                HealthCheckFailure(
                    f"{container_name} failed health check on production port {port}: "
                    f"{attempt.final_health.error}",
                    container=container_name,
                    port=port,
                ),
            )

        attempt.transition(DeployState.DEPLOYED)
        attempt.finished_at = utcnow()
        if previous_container:
            await self._discard(previous_container)
        logger.info(f"Deployed {app_name} {version} as {container_name} on port {port}")
        return attempt

    async def _clear_stale(self, attempt: DeploymentAttempt) -> None:
        """Remove leftovers holding either port or the new name (best-effort)."""
        stale = set(await self.engine.containers_publishing(attempt.port))
        stale |= set(await self.engine.containers_publishing(attempt.temp_port))
        stale.discard(attempt.previous_container)
        stale.add(attempt.container_name)
        for name in sorted(stale):
            await self._discard(name)

    async def _capture_logs(self, attempt: DeploymentAttempt) -> None:
        result = await self.engine.container_logs(attempt.container_name)
        if result.ok:
            attempt.container_logs = result.output[-MAX_CAPTURED_LOG_CHARS:]

    async def _discard(self, name: str) -> None:
        """Stop and remove a container, ignoring failures."""
        result = await self.engine.remove_container(name, force=True)
        if not result.ok:
            logger.debug(f"Cleanup of {name} skipped: {result.describe()}")

    def _fail(self, attempt: DeploymentAttempt, error: AppForgeError) -> DeploymentAttempt:
        attempt.error = error
        attempt.transition(DeployState.FAILED)
        attempt.finished_at = utcnow()
        logger.error(f"Deployment of {attempt.app_name} {attempt.version} failed: {error.message}")
        return attempt
