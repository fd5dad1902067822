"""Container engine capability and its Docker CLI implementation.

Every engine call returns an ``EngineResult``; non-zero exits and timeouts
are values, not exceptions. Call sites decide whether to handle a failed
result or treat the call as best-effort cleanup.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class EngineResult:
    """Result of one engine command."""

    ok: bool
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_ms: int = 0
    command: list[str] = field(default_factory=list)

    @property
    def output(self) -> str:
        """Combined output, stderr last (where the engine reports failures)."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)

    def describe(self) -> str:
        if self.timed_out:
            return f"timed out after {self.duration_ms}ms"
        return self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"


@dataclass
class ContainerState:
    """Engine-reported state of one container."""

    name: str
    exists: bool = False
    running: bool = False
    status: str = "missing"
    image: str | None = None
    mounts: list[str] = field(default_factory=list)


@runtime_checkable
class ContainerEngine(Protocol):
    """What the builder, deployer and orchestrator need from an engine."""

    async def build_image(
        self,
        context_dir: Path,
        tags: Sequence[str],
        cache_from: Sequence[str] = (),
        no_cache_filter: Sequence[str] = (),
        target: str | None = None,
        no_cache: bool = False,
    ) -> EngineResult: ...

    async def run_container(
        self, image: str, name: str, host_port: int, container_port: int
    ) -> EngineResult: ...

    async def stop_container(self, name: str) -> EngineResult: ...

    async def remove_container(self, name: str, force: bool = False) -> EngineResult: ...

    async def inspect_container(self, name: str) -> ContainerState: ...

    async def container_logs(self, name: str, tail: int = 100) -> EngineResult: ...

    async def containers_publishing(self, port: int) -> list[str]: ...

    async def containers_named(self, prefix: str) -> list[str]: ...

    async def remove_image(self, ref: str) -> EngineResult: ...

    async def remove_volume(self, name: str) -> EngineResult: ...

    async def prune_build_cache(self) -> EngineResult: ...

    async def prune_system(self) -> EngineResult: ...


class DockerEngine:
    """ContainerEngine backed by the ``docker`` CLI."""

    def __init__(
        self,
        binary: str = "docker",
        build_timeout: float = 300.0,
        command_timeout: float = 60.0,
        buildkit: bool = True,
    ):
        """Initialize the engine.

        Args:
            binary: Docker CLI executable.
            build_timeout: Ceiling for an image build, in seconds.
            command_timeout: Ceiling for every other command, in seconds.
            buildkit: Enable BuildKit for builds.
        """
        self.binary = binary
        self.build_timeout = build_timeout
        self.command_timeout = command_timeout
        self.buildkit = buildkit

    async def _run(
        self,
        args: list[str],
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> EngineResult:
        """Run one CLI command with a timeout; the process is killed on expiry."""
        cmd = [self.binary, *args]
        timeout = timeout or self.command_timeout
        started = time.monotonic()
        logger.debug(f"Engine command: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **(env or {})},
            )
        except OSError as e:
            return EngineResult(ok=False, returncode=127, stderr=str(e), command=cmd)

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            elapsed = int((time.monotonic() - started) * 1000)
            logger.warning(f"Engine command timed out after {timeout}s: {' '.join(cmd[:3])}")
            return EngineResult(
                ok=False,
                returncode=-1,
                timed_out=True,
                duration_ms=elapsed,
                command=cmd,
            )

        returncode = process.returncode or 0
        return EngineResult(
            ok=returncode == 0,
            returncode=returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            duration_ms=int((time.monotonic() - started) * 1000),
            command=cmd,
        )

    async def build_image(
        self,
        context_dir: Path,
        tags: Sequence[str],
        cache_from: Sequence[str] = (),
        no_cache_filter: Sequence[str] = (),
        target: str | None = None,
        no_cache: bool = False,
    ) -> EngineResult:
        args = ["build"]
        for source in cache_from:
            args += ["--cache-from", source]
        for stage in no_cache_filter:
            args += ["--no-cache-filter", stage]
        if target:
            args += ["--target", target]
        if no_cache:
            args.append("--no-cache")
        for tag in tags:
            args += ["-t", tag]
        args.append(str(context_dir))

        env = {"DOCKER_BUILDKIT": "1" if self.buildkit else "0"}
        return await self._run(args, timeout=self.build_timeout, env=env)

    async def run_container(
        self, image: str, name: str, host_port: int, container_port: int
    ) -> EngineResult:
        return await self._run(
            ["run", "-d", "--name", name, "-p", f"{host_port}:{container_port}", image]
        )

    async def stop_container(self, name: str) -> EngineResult:
        return await self._run(["stop", name])

    async def remove_container(self, name: str, force: bool = False) -> EngineResult:
        return await self._run(["rm", "-f", name] if force else ["rm", name])

    async def inspect_container(self, name: str) -> ContainerState:
        result = await self._run(["inspect", "--type", "container", "--format", "{{json .}}", name])
        if not result.ok:
            return ContainerState(name=name)
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            logger.warning(f"Unreadable inspect output for {name}: {e}")
            return ContainerState(name=name)

        state = data.get("State") or {}
        return ContainerState(
            name=name,
            exists=True,
            running=bool(state.get("Running")),
            status=state.get("Status", "unknown"),
            image=(data.get("Config") or {}).get("Image"),
            mounts=[m["Name"] for m in data.get("Mounts") or [] if m.get("Name")],
        )

    async def container_logs(self, name: str, tail: int = 100) -> EngineResult:
        return await self._run(["logs", "--tail", str(tail), name])

    async def _list_names(self, filter_expr: str) -> list[str]:
        result = await self._run(["ps", "-a", "--filter", filter_expr, "--format", "{{.Names}}"])
        if not result.ok:
            logger.warning(f"Could not list containers ({filter_expr}): {result.describe()}")
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def containers_publishing(self, port: int) -> list[str]:
        return await self._list_names(f"publish={port}")

    async def containers_named(self, prefix: str) -> list[str]:
        names = await self._list_names(f"name=^{prefix}")
        return [name for name in names if name.startswith(prefix)]

    async def remove_image(self, ref: str) -> EngineResult:
        return await self._run(["rmi", "-f", ref])

    async def remove_volume(self, name: str) -> EngineResult:
        return await self._run(["volume", "rm", name])

    async def prune_build_cache(self) -> EngineResult:
        return await self._run(["builder", "prune", "-af"], timeout=self.build_timeout)

    async def prune_system(self) -> EngineResult:
        """Remove every unused image, container, network and volume on the host."""
        return await self._run(
            ["system", "prune", "-af", "--volumes"], timeout=self.build_timeout
        )
