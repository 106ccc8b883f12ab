"""Credential set collected from OAuth callbacks during one cycle."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from orchestrator.models import AuthResult
    from orchestrator.readiness import ReadinessSignal

__all__ = ["CredentialSnapshot", "CredentialStore"]

logger = logging.getLogger("orchestrator.credentials")


class CredentialSnapshot:
    """Immutable view of a store taken under its lock."""

    __slots__ = ("acknowledged", "delivered", "primary_auth", "secondary_auth")

    def __init__(
        self,
        primary_auth: AuthResult | None,
        secondary_auth: AuthResult | None,
        *,
        delivered: bool,
        acknowledged: bool,
    ) -> None:
        self.primary_auth = primary_auth
        self.secondary_auth = secondary_auth
        self.delivered = delivered
        self.acknowledged = acknowledged


class CredentialStore:
    """Primary (chat) and optional secondary (music) auth results plus delivery flags.

    The store is bound to the readiness signal of the generation it was created
    for. Completing the set fires that signal exactly once; a store left over
    from an earlier cycle fires an abandoned signal, which is a no-op.
    """

    def __init__(self, signal: ReadinessSignal, *, secondary_enabled: bool) -> None:
        self._lock = asyncio.Lock()
        self._signal = signal
        self._secondary_enabled = secondary_enabled
        self._primary_auth: AuthResult | None = None
        self._secondary_auth: AuthResult | None = None
        self._delivered = False
        self._acknowledged = False

    @property
    def generation(self) -> int:
        return self._signal.generation

    @property
    def secondary_enabled(self) -> bool:
        return self._secondary_enabled

    async def record_primary(self, auth: AuthResult) -> bool:
        """Store the chat-platform tokens; return True if this call completed the set."""
        async with self._lock:
            if self._delivered:
                logger.info("Ignoring primary auth: credentials already delivered")
                return False
            self._primary_auth = auth
            return self._deliver_if_ready()

    async def record_secondary(self, auth: AuthResult) -> bool:
        """Store the music-provider tokens; return True if this call completed the set."""
        async with self._lock:
            if self._delivered:
                logger.info("Ignoring secondary auth: credentials already delivered")
                return False
            self._secondary_auth = auth
            return self._deliver_if_ready()

    async def is_delivered(self) -> bool:
        async with self._lock:
            return self._delivered

    async def is_acknowledged(self) -> bool:
        async with self._lock:
            return self._acknowledged

    async def acknowledge(self) -> None:
        """Mark delivery as consumed by the orchestrator."""
        async with self._lock:
            if not self._delivered:
                msg = "Cannot acknowledge credentials that were never delivered."
                raise RuntimeError(msg)
            self._acknowledged = True

    async def snapshot(self) -> CredentialSnapshot:
        async with self._lock:
            return CredentialSnapshot(
                self._primary_auth,
                self._secondary_auth,
                delivered=self._delivered,
                acknowledged=self._acknowledged,
            )

    def _deliver_if_ready(self) -> bool:
        # Caller holds the lock: check, set and fire form one step.
        if self._primary_auth is None:
            return False
        if self._secondary_enabled and self._secondary_auth is None:
            return False
        self._delivered = True
        if self._signal.fire():
            logger.info("All auth codes received, starting bot.")
        else:
            logger.info("Credentials completed for a superseded cycle (generation %d)", self._signal.generation)
        return True
