"""Re-armable one-shot readiness signal.

The gate holds one generation-tagged signal at a time. Waiting on a signal that
has already fired returns immediately, so delivery before the first waiter is
never lost. Re-arming releases every waiter of the previous generation with a
``RestartSignal`` before installing a fresh, unfired generation, which means a
waiter can never block on a signal that nobody will fire again.
"""

from __future__ import annotations

import asyncio
import logging

from orchestrator.errors import RestartSignal

__all__ = ["ReadinessGate", "ReadinessSignal"]

logger = logging.getLogger("orchestrator.readiness")


class ReadinessSignal:
    """One generation of the readiness gate."""

    def __init__(self, generation: int) -> None:
        self.generation = generation
        self._event = asyncio.Event()
        self._fired = False
        self._abandoned = False

    @property
    def fired(self) -> bool:
        """Return True once this generation reported readiness."""
        return self._fired

    @property
    def abandoned(self) -> bool:
        """Return True once this generation was replaced by a re-arm."""
        return self._abandoned

    def fire(self) -> bool:
        """Broadcast readiness to all current and future waiters; later calls are no-ops."""
        if self._fired or self._abandoned:
            return False
        self._fired = True
        self._event.set()
        return True

    def abandon(self) -> None:
        """Release waiters without reporting readiness."""
        if self._abandoned:
            return
        self._abandoned = True
        self._event.set()

    async def wait(self) -> None:
        """Wait until fired; raise RestartSignal if abandoned first."""
        await self._event.wait()
        if not self._fired:
            raise RestartSignal


class ReadinessGate:
    """Indirection cell holding the current readiness signal."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._signal = ReadinessSignal(generation=0)

    @property
    def signal(self) -> ReadinessSignal:
        """Return the current generation; producers bind to it when created."""
        return self._signal

    @property
    def generation(self) -> int:
        return self._signal.generation

    def is_fired(self) -> bool:
        return self._signal.fired

    def fire(self) -> bool:
        """Fire the current generation directly (pre-validated credentials)."""
        fired = self._signal.fire()
        if fired:
            logger.info("Readiness gate fired (generation %d)", self._signal.generation)
        return fired

    async def wait(self) -> None:
        """Suspend until the current generation fires.

        Raises:
            RestartSignal: The generation was re-armed before it fired.

        """
        async with self._lock:
            signal = self._signal
        await signal.wait()

    async def rearm(self) -> ReadinessSignal:
        """Release the previous generation's waiters and install a fresh signal."""
        async with self._lock:
            previous = self._signal
            previous.abandon()
            self._signal = ReadinessSignal(generation=previous.generation + 1)
            logger.info("Readiness gate re-armed (generation %d)", self._signal.generation)
            return self._signal
