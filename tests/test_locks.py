"""Tests for per-app locks and free-port probing."""

import asyncio
import socket

import pytest

from appforge.orchestration import AppLockRegistry, is_port_free


class TestAppLockRegistry:
    """Tests for AppLockRegistry."""

    def test_same_app_serializes(self):
        locks = AppLockRegistry()
        events = []

        async def worker(tag):
            async with locks.hold("todo"):
                events.append(f"{tag}-start")
                await asyncio.sleep(0.01)
                events.append(f"{tag}-end")

        async def main():
            await asyncio.gather(worker("a"), worker("b"))

        asyncio.run(main())
        assert events == ["a-start", "a-end", "b-start", "b-end"]

    def test_different_apps_run_in_parallel(self):
        locks = AppLockRegistry()
        events = []

        async def worker(app_name):
            async with locks.hold(app_name):
                events.append(f"{app_name}-start")
                await asyncio.sleep(0.01)
                events.append(f"{app_name}-end")

        async def main():
            await asyncio.gather(worker("todo"), worker("notes"))

        asyncio.run(main())
        assert events[:2] == ["todo-start", "notes-start"]

    def test_released_after_exception(self):
        locks = AppLockRegistry()

        async def fail():
            async with locks.hold("todo"):
                raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            asyncio.run(fail())
        assert not locks.is_locked("todo")

    def test_one_lock_per_app(self):
        locks = AppLockRegistry()
        assert locks.lock_for("todo") is locks.lock_for("todo")
        assert locks.lock_for("todo") is not locks.lock_for("notes")


class TestIsPortFree:
    """Tests for is_port_free."""

    def test_bound_port_is_not_free(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            sock.listen(1)
            port = sock.getsockname()[1]
            assert not is_port_free(port)


class TestDiscard:
    """Tests for dropping released locks."""

    def test_discard_released_lock(self):
        locks = AppLockRegistry()

        async def run():
            async with locks.hold("todo"):
                pass

        asyncio.run(run())
        assert len(locks) == 1
        assert locks.discard("todo")
        assert len(locks) == 0
        assert not locks.discard("todo")

    def test_discard_refused_while_waiter_pending(self):
        locks = AppLockRegistry()
        results = []

        async def first():
            async with locks.hold("todo"):
                await asyncio.sleep(0.01)
            results.append(locks.discard("todo"))

        async def second():
            await asyncio.sleep(0)
            async with locks.hold("todo"):
                results.append("second")

        async def main():
            await asyncio.gather(first(), second())

        asyncio.run(main())
        assert results == [False, "second"]
        assert locks.discard("todo")
