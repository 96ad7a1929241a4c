from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from .errors import SessionBusy

logger = logging.getLogger("agent-runtime")


class SessionLocks:
    """
    One asyncio.Lock per session id, so turns on a session never overlap.

    Policy "wait" queues the second caller (optionally up to `wait_timeout`
    seconds); policy "reject" fails it straight away with SessionBusy.
    """

    def __init__(self, policy: str = "wait", wait_timeout: Optional[float] = None) -> None:
        if policy not in ("wait", "reject"):
            raise ValueError(f"unknown session busy policy {policy!r}")
        self.policy = policy
        self.wait_timeout = wait_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self._lock(session_id)
        if self.policy == "reject" and lock.locked():
            self._forget(session_id, lock)
            raise SessionBusy("Another turn is running on this session", details={"session_id": session_id})
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            if self.wait_timeout is not None:
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=self.wait_timeout)
                except asyncio.TimeoutError as exc:
                    raise SessionBusy(
                        f"Session still busy after {self.wait_timeout}s",
                        details={"session_id": session_id},
                    ) from exc
            else:
                await lock.acquire()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[session_id] -= 1
            self._forget(session_id, lock)

    def _forget(self, session_id: str, lock: asyncio.Lock) -> None:
        # Drop the lock once nobody holds or waits on it.
        if self._users.get(session_id, 0) > 0 or lock.locked():
            return
        self._users.pop(session_id, None)
        if self._locks.get(session_id) is lock:
            del self._locks[session_id]

    def tracked(self) -> int:
        """Number of session ids that currently have a lock."""
        return len(self._locks)

    def discard(self, session_id: str) -> None:
        lock = self._locks.get(session_id)
        if lock is not None:
            self._forget(session_id, lock)
