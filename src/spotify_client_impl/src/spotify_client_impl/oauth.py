"""Spotify authorization-code helpers.

Token requests are blocking ``requests`` calls pushed onto a worker thread so the
callback server and chat listener keep running while an exchange is in flight.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from http import HTTPStatus
from urllib.parse import urlencode

import requests
from orchestrator.errors import AuthError, TransportError
from orchestrator.models import AuthResult

__all__ = [
    "CALLBACK_URI",
    "TOKEN_URL",
    "exchange_code",
    "make_oauth_url",
    "refresh_access_token",
]

logger = logging.getLogger("spotify_client_impl.oauth")

AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
TOKEN_URL = "https://accounts.spotify.com/api/token"  # noqa: S105
CALLBACK_URI = "http://localhost:3000/spotifycallback"
SCOPES = ("user-read-currently-playing",)
DEFAULT_TIMEOUT_SECONDS = 10.0


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def make_oauth_url(client_id: str, redirect_uri: str = CALLBACK_URI) -> str:
    """Build the consent-screen URL the operator opens in a browser."""
    query = urlencode(
        {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(SCOPES),
            "response_type": "code",
        }
    )
    return f"{AUTHORIZE_URL}?{query}"


async def exchange_code(
    code: str,
    client_id: str,
    client_secret: str,
    *,
    redirect_uri: str = CALLBACK_URI,
) -> AuthResult:
    """Exchange an authorization code for an access/refresh token pair."""
    form = {"code": code, "grant_type": "authorization_code", "redirect_uri": redirect_uri}
    return await asyncio.to_thread(_request_tokens, form, client_id, client_secret)


async def refresh_access_token(refresh_token: str, client_id: str, client_secret: str) -> AuthResult:
    """Trade a refresh token for a new access token, keeping the old refresh token if none is returned."""
    form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
    auth = await asyncio.to_thread(_request_tokens, form, client_id, client_secret, refresh_token)
    logger.info("Refreshed Spotify OAuth")
    return auth


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _basic_auth(client_id: str, client_secret: str) -> str:
    raw = f"{client_id}:{client_secret}".encode()
    return base64.b64encode(raw).decode("ascii")


def _request_tokens(
    form: dict[str, str],
    client_id: str,
    client_secret: str,
    fallback_refresh_token: str | None = None,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> AuthResult:
    try:
        response = requests.post(
            TOKEN_URL,
            data=form,
            headers={"Authorization": f"Basic {_basic_auth(client_id, client_secret)}"},
            timeout=timeout_seconds,
        )
    except requests.RequestException as exc:
        msg = f"Spotify token request failed. {exc}"
        raise TransportError(msg) from exc
    return _parse_token_response(response, fallback_refresh_token)


def _parse_token_response(response: requests.Response, fallback_refresh_token: str | None = None) -> AuthResult:
    """Map a token endpoint response onto AuthResult or the error taxonomy."""
    if response.status_code in (HTTPStatus.BAD_REQUEST, HTTPStatus.UNAUTHORIZED):
        raise AuthError("Invalid authorization code")  # noqa: TRY003, EM101
    if response.status_code != HTTPStatus.OK:
        msg = f"expected status 200, got {response.status_code}"
        raise TransportError(msg)
    try:
        payload = response.json()
    except ValueError as exc:
        msg = f"Spotify token response is not JSON. {exc}"
        raise TransportError(msg) from exc
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise TransportError("Spotify token response has no access_token")  # noqa: TRY003, EM101
    payload.setdefault("refresh_token", fallback_refresh_token)
    if not payload.get("refresh_token"):
        raise AuthError("Spotify token response has no refresh_token")  # noqa: TRY003, EM101
    return AuthResult.model_validate(payload)
