"""Shared lifecycle status with a broadcast interrupt for restarts."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

__all__ = ["LifecycleState", "LifecycleStatus"]

logger = logging.getLogger("orchestrator.lifecycle")


class LifecycleStatus(str, Enum):
    """Process-wide status seen by the callback server and the chat listener."""

    STOPPED = "stopped"
    RUNNING = "running"
    RESTARTING = "restarting"


class LifecycleState:
    """Status cell plus an interrupt that wakes every current waiter on restart.

    Each interrupt generation is an ``asyncio.Event``. Entering ``RESTARTING``
    sets the current event and installs a new one, so the broadcast reaches
    exactly the waiters registered before it. A waiter that arrives while the
    status is already ``RESTARTING`` returns at once instead of waiting for the
    next broadcast.
    """

    def __init__(self, status: LifecycleStatus = LifecycleStatus.STOPPED) -> None:
        self._lock = asyncio.Lock()
        self._status = status
        self._interrupt = asyncio.Event()

    @property
    def status(self) -> LifecycleStatus:
        """Return the last committed status without taking the lock."""
        return self._status

    async def get(self) -> LifecycleStatus:
        async with self._lock:
            return self._status

    async def set(self, new_status: LifecycleStatus, *, expected: LifecycleStatus | None = None) -> bool:
        """Commit ``new_status``; with ``expected``, only if the current status matches.

        Returns:
            True when the transition was applied.

        """
        async with self._lock:
            previous = self._status
            if expected is not None and previous is not expected:
                return False
            self._status = new_status
            if new_status is LifecycleStatus.RESTARTING and previous is not LifecycleStatus.RESTARTING:
                self._interrupt.set()
                self._interrupt = asyncio.Event()
        if previous is not new_status:
            logger.info("Lifecycle %s -> %s", previous.value, new_status.value)
        return True

    async def wait_for_interrupt(self) -> None:
        """Suspend until the next restart broadcast (or return now if one is in progress)."""
        async with self._lock:
            if self._status is LifecycleStatus.RESTARTING:
                return
            interrupt = self._interrupt
        await interrupt.wait()
