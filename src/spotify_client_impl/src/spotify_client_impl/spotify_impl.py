"""Spotify Client Implementation.

Concrete music_client_api.Client backed by the Web API "currently playing"
endpoint. An expired access token is refreshed once per lookup; new tokens are
handed to ``on_refresh`` so the caller can persist them.
"""

from __future__ import annotations

import asyncio
import logging
from http import HTTPStatus
from typing import TYPE_CHECKING

import requests
from orchestrator.errors import AuthError, TransportError

from music_client_api import Client, SpotifyTrack
from spotify_client_impl import oauth

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from orchestrator.models import AuthResult

__all__ = ["NOW_PLAYING_URL", "SpotifyClient"]

logger = logging.getLogger("spotify_client_impl")

NOW_PLAYING_URL = "https://api.spotify.com/v1/me/player/currently-playing"
DEFAULT_TIMEOUT_SECONDS = 10.0


class SpotifyClient(Client):
    """Currently-playing lookups for one authorized Spotify user.

    Attributes:
        _client_id: Spotify application id.
        _client_secret: Spotify application secret.
        _auth: Current access/refresh token pair.
        _on_refresh: Optional coroutine invoked with refreshed tokens.

    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        auth: AuthResult,
        *,
        on_refresh: Callable[[AuthResult], Awaitable[None]] | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._auth = auth
        self._on_refresh = on_refresh
        self._timeout_seconds = timeout_seconds
        self._refresh_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "spotify"

    @property
    def auth(self) -> AuthResult:
        return self._auth

    async def fetch_current_track(self) -> SpotifyTrack | None:
        """Return the playing track, refreshing the access token once on 401."""
        token = self._auth.access_token
        response = await asyncio.to_thread(self._get_currently_playing, token)
        if response.status_code == HTTPStatus.UNAUTHORIZED:
            await self.refresh(stale_token=token)
            response = await asyncio.to_thread(self._get_currently_playing, self._auth.access_token)
            if response.status_code == HTTPStatus.UNAUTHORIZED:
                raise AuthError("Spotify rejected a freshly refreshed token")  # noqa: TRY003, EM101
        return _track_from_response(response)

    async def refresh(self, *, stale_token: str | None = None) -> AuthResult:
        """Refresh the access token unless another task already replaced ``stale_token``."""
        async with self._refresh_lock:
            if stale_token is not None and self._auth.access_token != stale_token:
                return self._auth
            self._auth = await oauth.refresh_access_token(
                self._auth.refresh_token,
                self._client_id,
                self._client_secret,
            )
            auth = self._auth
        if self._on_refresh is not None:
            await self._on_refresh(auth)
        return auth

    def _get_currently_playing(self, access_token: str) -> requests.Response:
        try:
            return requests.get(
                NOW_PLAYING_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self._timeout_seconds,
            )
        except requests.RequestException as exc:
            msg = f"Spotify currently-playing request failed. {exc}"
            raise TransportError(msg) from exc


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _track_from_response(response: requests.Response) -> SpotifyTrack | None:
    """Convert a currently-playing response into a track, or None when idle."""
    if response.status_code != HTTPStatus.OK:
        # 204 means no active device.
        return None
    try:
        payload = response.json()
    except ValueError as exc:
        msg = f"Spotify currently-playing response is not JSON. {exc}"
        raise TransportError(msg) from exc
    if not isinstance(payload, dict) or not payload.get("is_playing"):
        return None
    item = payload.get("item") or {}
    track_id = item.get("id")
    if not track_id:
        logger.info("Spotify is playing an item without a track id")
        return None
    return SpotifyTrack(id=track_id)
