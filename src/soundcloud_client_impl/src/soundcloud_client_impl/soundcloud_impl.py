"""SoundCloud Client Implementation.

Concrete music_client_api.Client reading the most recent entry of the user's
play history. SoundCloud has no public OAuth app flow, so the token is the
``Authorization`` header value copied from a logged-in browser session.
"""

from __future__ import annotations

import asyncio
import logging
from http import HTTPStatus

import requests
from orchestrator.errors import AuthError, TransportError

from music_client_api import Client, SoundcloudTrack

__all__ = ["PLAY_HISTORY_URL", "SoundcloudClient"]

logger = logging.getLogger("soundcloud_client_impl")

PLAY_HISTORY_URL = "https://api-v2.soundcloud.com/me/play-history/tracks?limit=1"
DEFAULT_TIMEOUT_SECONDS = 10.0


class SoundcloudClient(Client):
    """Play-history lookups with a static OAuth header."""

    def __init__(self, oauth: str, *, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._oauth = oauth
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_token(cls, oauth: str | None) -> SoundcloudClient | None:
        """Return a client when a token is configured, else None."""
        if not oauth:
            return None
        return cls(oauth)

    @property
    def name(self) -> str:
        return "soundcloud"

    async def fetch_current_track(self) -> SoundcloudTrack | None:
        """Return the most recently played track, or None for an empty history."""
        payload = await asyncio.to_thread(self._get_play_history)
        collection = payload.get("collection") or []
        if not isinstance(collection, list):
            raise TransportError("SoundCloud play history collection is not a list")  # noqa: TRY003, EM101
        if not collection:
            logger.info("No tracks found in SoundCloud play history")
            return None
        entry = collection[0]
        track = entry.get("track") if isinstance(entry, dict) else None
        permalink = track.get("permalink_url") if isinstance(track, dict) else None
        if not isinstance(permalink, str) or not permalink:
            raise TransportError("SoundCloud play history entry has no permalink_url")  # noqa: TRY003, EM101
        return SoundcloudTrack(permalink_url=permalink)

    def _get_play_history(self) -> dict:
        try:
            response = requests.get(
                PLAY_HISTORY_URL,
                headers={"Authorization": self._oauth},
                timeout=self._timeout_seconds,
            )
        except requests.RequestException as exc:
            msg = f"SoundCloud play history request failed. {exc}"
            raise TransportError(msg) from exc
        if response.status_code in (HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN):
            raise AuthError("SoundCloud rejected the configured OAuth token")  # noqa: TRY003, EM101
        if response.status_code != HTTPStatus.OK:
            msg = f"expected status 200, got {response.status_code}"
            raise TransportError(msg)
        try:
            payload = response.json()
        except ValueError as exc:
            msg = f"SoundCloud play history is not JSON. {exc}"
            raise TransportError(msg) from exc
        if not isinstance(payload, dict):
            raise TransportError("SoundCloud play history has an unexpected shape")  # noqa: TRY003, EM101
        return payload
