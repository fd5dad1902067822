"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from appforge.config.settings import Settings  # noqa: E402
from appforge.deploy.health import HealthResult  # noqa: E402
from appforge.engine.docker import ContainerState, EngineResult  # noqa: E402
from appforge.errors import GenerationError  # noqa: E402
from appforge.generation.client import Completion  # noqa: E402


def _ok(stdout: str = "", duration_ms: int = 0) -> EngineResult:
    return EngineResult(ok=True, returncode=0, stdout=stdout, duration_ms=duration_ms)


def _fail(stderr: str) -> EngineResult:
    return EngineResult(ok=False, returncode=1, stderr=stderr)


class FakeEngine:
    """In-memory ContainerEngine.

    Containers hold their host port while running, like the real engine.
    Failures are scripted through the public attributes.
    """

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.images: set[str] = set()
        self.volumes: set[str] = set()
        self.calls: list[tuple] = []
        self.build_failures = 0
        self.build_output = "npm ERR! missing script: build"
        self.fail_stop: set[str] = set()
        self.fail_run_ports: set[int] = set()
        self.logs = "Error: Cannot find module 'express'"
        self.cache_pruned = False
        self.system_pruned = False

    # -- helpers for assertions -------------------------------------------

    def running(self) -> set[str]:
        return {name for name, c in self.containers.items() if c["running"]}

    def port_of(self, name: str) -> int | None:
        container = self.containers.get(name)
        return container["port"] if container else None

    def builds(self) -> list[tuple]:
        return [call for call in self.calls if call[0] == "build"]

    def add_container(self, name: str, port: int, running: bool = True, mounts=()):
        self.containers[name] = {
            "running": running,
            "port": port,
            "image": name,
            "mounts": list(mounts),
        }
        self.volumes.update(mounts)

    # -- ContainerEngine ---------------------------------------------------

    async def build_image(
        self,
        context_dir,
        tags,
        cache_from=(),
        no_cache_filter=(),
        target=None,
        no_cache=False,
    ):
        self.calls.append(
            ("build", tuple(tags), tuple(cache_from), tuple(no_cache_filter), target, no_cache)
        )
        if self.build_failures > 0:
            self.build_failures -= 1
            return EngineResult(ok=False, returncode=1, stderr=self.build_output, duration_ms=15)
        self.images.update(tags)
        return _ok("Successfully built", duration_ms=120)

    async def run_container(self, image, name, host_port, container_port):
        self.calls.append(("run", name, host_port))
        if name in self.containers:
            return _fail(f"Conflict. The container name {name} is already in use")
        if host_port in self.fail_run_ports:
            return _fail(f"Bind for 0.0.0.0:{host_port} failed: port is already allocated")
        for other in self.containers.values():
            if other["running"] and other["port"] == host_port:
                return _fail(f"Bind for 0.0.0.0:{host_port} failed: port is already allocated")
        self.containers[name] = {
            "running": True,
            "port": host_port,
            "image": image,
            "mounts": [],
        }
        return _ok(f"{name}-id")

    async def stop_container(self, name):
        self.calls.append(("stop", name))
        if name in self.fail_stop:
            return _fail(f"cannot stop container: {name}")
        if name not in self.containers:
            return _fail(f"No such container: {name}")
        self.containers[name]["running"] = False
        return _ok(name)

    async def remove_container(self, name, force=False):
        self.calls.append(("rm", name))
        if name not in self.containers:
            return _fail(f"No such container: {name}")
        del self.containers[name]
        return _ok(name)

    async def inspect_container(self, name):
        container = self.containers.get(name)
        if container is None:
            return ContainerState(name=name)
        return ContainerState(
            name=name,
            exists=True,
            running=container["running"],
            status="running" if container["running"] else "exited",
            image=container["image"],
            mounts=list(container["mounts"]),
        )

    async def container_logs(self, name, tail=100):
        if name not in self.containers:
            return _fail(f"No such container: {name}")
        return _ok(self.logs)

    async def containers_publishing(self, port):
        return sorted(n for n, c in self.containers.items() if c["port"] == port)

    async def containers_named(self, prefix):
        return sorted(n for n in self.containers if n.startswith(prefix))

    async def remove_image(self, ref):
        self.calls.append(("rmi", ref))
        if ref not in self.images:
            return _fail(f"No such image: {ref}")
        self.images.discard(ref)
        return _ok(ref)

    async def remove_volume(self, name):
        self.calls.append(("volume-rm", name))
        if name not in self.volumes:
            return _fail(f"No such volume: {name}")
        self.volumes.discard(name)
        return _ok(name)

    async def prune_build_cache(self):
        self.cache_pruned = True
        return _ok("Total reclaimed space: 1.2GB")

    async def prune_system(self):
        self.calls.append(("system-prune",))
        self.system_pruned = True
        return _ok("Total reclaimed space: 3.4GB")


class FakeHealthChecker:
    """Health checker that trusts the engine's running state.

    ``unhealthy`` holds container names, ports or ``(container, port)``
    pairs that never become ready.
    """

    def __init__(self, engine: FakeEngine, unhealthy=()):
        self.engine = engine
        self.unhealthy = set(unhealthy)
        self.checks: list[tuple[str, int]] = []

    async def check(self, container, port, timeout=None):
        self.checks.append((container, port))
        state = await self.engine.inspect_container(container)
        blocked = (
            container in self.unhealthy
            or port in self.unhealthy
            or (container, port) in self.unhealthy
        )
        if not state.running:
            return HealthResult(
                healthy=False, container=container, port=port, error="container is not running"
            )
        if blocked:
            return HealthResult(
                healthy=False,
                container=container,
                port=port,
                phase="readiness",
                status_code=500,
                error="HTTP 500",
                requests=3,
            )
        return HealthResult(
            healthy=True, container=container, port=port, phase="readiness", status_code=200, requests=1
        )


class FakeGenerator:
    """Scripted ContentGenerator; exceptions in the script are raised."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.prompts: list[str] = []

    async def complete(self, prompt, *, max_tokens=None, temperature=0.7):
        self.prompts.append(prompt)
        if not self.responses:
            raise GenerationError("No scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return Completion(
            content=response,
            latency_ms=42,
            usage={"prompt_tokens": 10, "completion_tokens": 90, "total_tokens": 100},
            model="fake-model",
        )


def file_blocks(files: dict[str, str], changes: str = "") -> str:
    """Render a generation response in the tagged-block format."""
    parts = [f'<file path="{path}">\n{content}\n</file>' for path, content in files.items()]
    if changes:
        parts.append(f"<changes>{changes}</changes>")
    return "\n\n".join(parts)


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary directory."""
    return Settings(
        apps_dir=tmp_path / "apps",
        backups_dir=tmp_path / "backups",
        ledger_path=tmp_path / "apps.json",
        base_port=3100,
        temp_port_offset=1000,
        health_startup_grace_seconds=0,
        health_timeout_seconds=1,
        max_build_attempts=3,
        backup_retention=5,
        cerebras_api_key="",
        log_format="text",
    )


@pytest.fixture
def engine():
    return FakeEngine()


def make_orchestrator(settings, engine, generator=None, unhealthy=(), fixer=None):
    """Orchestrator over the fakes, with every port treated as free."""
    from appforge.deploy import BlueGreenDeployer
    from appforge.ledger import VersionLedger
    from appforge.orchestration import Orchestrator

    ledger = VersionLedger(settings.ledger_path, base_port=settings.base_port).open()
    deployer = BlueGreenDeployer(
        engine,
        FakeHealthChecker(engine, unhealthy),
        container_port=settings.container_port,
        temp_port_offset=settings.temp_port_offset,
    )
    return Orchestrator(
        ledger,
        engine,
        generator=generator if generator is not None else FakeGenerator(),
        settings=settings,
        fixer=fixer,
        deployer=deployer,
        port_check=lambda port: True,
    )
