"""Health checker: liveness via the engine, readiness via HTTP."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

import httpx

from appforge.engine.docker import ContainerEngine

logger = logging.getLogger(__name__)

# Upper bound for a single readiness request
MAX_REQUEST_SECONDS = 5.0


@dataclass
class HealthResult:
    """Outcome of one health check."""

    healthy: bool
    container: str
    port: int
    phase: str = "liveness"
    status_code: int | None = None
    error: str | None = None
    requests: int = 0
    duration_ms: int = 0


class HealthChecker:
    """Two-phase health check bounded by a single time budget.

    1. Liveness: the engine reports the container running.
    2. Readiness: an HTTP GET on the exposed port returns a 2xx status.

    Any network error, timeout or non-success status is not healthy. The
    whole check runs inside ``asyncio.wait_for`` so it never outlives its
    budget, including for containers that never start.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        host: str = "localhost",
        timeout: float = 15.0,
        startup_grace: float = 2.0,
        poll_interval: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the checker.

        Args:
            engine: Container engine used for liveness.
            host: Host the readiness requests connect to.
            timeout: Default budget in seconds.
            startup_grace: Wait before the first request, spent from the budget.
            poll_interval: Delay between failed requests.
            transport: Optional httpx transport (tests inject a mock).
        """
        self.engine = engine
        self.host = host
        self.timeout = timeout
        self.startup_grace = startup_grace
        self.poll_interval = poll_interval
        self.transport = transport

    async def check(self, container: str, port: int, timeout: float | None = None) -> HealthResult:
        """Check a container within ``timeout`` seconds (default budget if None)."""
        budget = timeout if timeout is not None else self.timeout
        started = time.monotonic()
        result = HealthResult(healthy=False, container=container, port=port)

        try:
            await asyncio.wait_for(self._run(result, budget, started), timeout=budget)
        except TimeoutError:
            result.healthy = False
            result.error = f"no healthy response within {budget}s" + (
                f" (last: {result.error})" if result.error else ""
            )

        result.duration_ms = int((time.monotonic() - started) * 1000)
        if result.healthy:
            logger.info(
                f"Health check passed for {container} on port {port} "
                f"(HTTP {result.status_code}, {result.duration_ms}ms)"
            )
        else:
            logger.warning(
                f"Health check failed for {container} on port {port} "
                f"during {result.phase}: {result.error}"
            )
        return result

    async def _is_running(self, container: str) -> bool:
        state = await self.engine.inspect_container(container)
        return state.running

    async def _run(self, result: HealthResult, budget: float, started: float) -> None:
        result.phase = "liveness"
        if not await self._is_running(result.container):
            result.error = "container is not running"
            return

        if self.startup_grace:
            await asyncio.sleep(self.startup_grace)

        result.phase = "readiness"
        url = f"http://{self.host}:{result.port}/"
        async with httpx.AsyncClient(transport=self.transport, follow_redirects=True) as client:
            while True:
                remaining = budget - (time.monotonic() - started)
                request_timeout = max(min(remaining, MAX_REQUEST_SECONDS), 0.1)
                result.requests += 1
                try:
                    response = await client.get(url, timeout=request_timeout)
                    result.status_code = response.status_code
                    if response.is_success:
                        result.healthy = True
                        result.error = None
                        return
                    result.error = f"HTTP {response.status_code}"
                except httpx.HTTPError as e:
                    result.error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__

                if not await self._is_running(result.container):
                    result.phase = "liveness"
                    result.error = f"container exited ({result.error})"
                    return
                await asyncio.sleep(self.poll_interval)
