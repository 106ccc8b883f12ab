"""Abstract interface for music providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from music_client_api.models import Track

__all__ = ["Client"]


class Client(ABC):
    """The contract for "what is playing right now" lookups."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return a short provider label used in logs."""
        raise NotImplementedError

    @abstractmethod
    async def fetch_current_track(self) -> Track | None:
        """Return the track currently (or most recently) playing.

        Returns:
            The track, or None when nothing is playing.

        Raises:
            AuthError: The provider rejected the stored credentials.
            TransportError: The provider could not be reached or answered unexpectedly.

        """
        raise NotImplementedError
