"""Per-app exclusive locks.

Cycles for the same app serialize; different apps proceed in parallel.

Example:
    locks = AppLockRegistry()

    async with locks.hold("todo-list"):
        await improve(...)
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class AppLockRegistry:
    """Hands out one ``asyncio.Lock`` per app name."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        # Holders plus waiters per app; a lock is only dropped at zero
        self._users: dict[str, int] = {}
        self._guard = threading.Lock()

    def lock_for(self, app_name: str) -> asyncio.Lock:
        with self._guard:
            return self._get_or_create(app_name)

    def _get_or_create(self, app_name: str) -> asyncio.Lock:
        lock = self._locks.get(app_name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[app_name] = lock
        return lock

    def is_locked(self, app_name: str) -> bool:
        lock = self._locks.get(app_name)
        return lock is not None and lock.locked()

    def discard(self, app_name: str) -> bool:
        """Forget an app's lock once nobody holds or awaits it.

        Returns:
            True if the lock was dropped
        """
        with self._guard:
            if self._users.get(app_name):
                return False
            return self._locks.pop(app_name, None) is not None

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, app_name: str) -> AsyncIterator[None]:
        """Hold the app's lock for the body, released on every exit path."""
        with self._guard:
            lock = self._get_or_create(app_name)
            self._users[app_name] = self._users.get(app_name, 0) + 1
        try:
            if lock.locked():
                logger.info(f"Waiting for in-flight operation on {app_name}")
            started = time.monotonic()
            async with lock:
                waited_ms = (time.monotonic() - started) * 1000
                if waited_ms > 100:
                    logger.debug(f"Acquired lock for {app_name} after {waited_ms:.0f}ms")
                yield
        finally:
            with self._guard:
                remaining = self._users[app_name] - 1
                if remaining:
                    self._users[app_name] = remaining
                else:
                    del self._users[app_name]
