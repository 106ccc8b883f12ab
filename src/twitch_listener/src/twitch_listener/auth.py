"""Twitch OAuth helpers: authorize URL, code exchange, validation, refresh."""

from __future__ import annotations

import asyncio
import logging
from http import HTTPStatus
from urllib.parse import urlencode

import requests
from orchestrator.errors import AuthError, TransportError
from orchestrator.models import AuthResult

__all__ = [
    "CALLBACK_URI",
    "exchange_code",
    "make_oauth_url",
    "refresh_token",
    "validate_token",
]

logger = logging.getLogger("twitch_listener.auth")

AUTHORIZE_URL = "https://id.twitch.tv/oauth2/authorize"
TOKEN_URL = "https://id.twitch.tv/oauth2/token"  # noqa: S105
VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"
CALLBACK_URI = "http://localhost:3000/callback"
SCOPES = ("chat:read", "chat:edit")
DEFAULT_TIMEOUT_SECONDS = 10.0


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def make_oauth_url(client_id: str, redirect_uri: str = CALLBACK_URI) -> str:
    """Build the Twitch consent-screen URL."""
    query = urlencode(
        {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
        }
    )
    return f"{AUTHORIZE_URL}?{query}"


async def exchange_code(
    client_id: str,
    client_secret: str,
    code: str,
    *,
    redirect_uri: str = CALLBACK_URI,
) -> AuthResult:
    """Exchange an authorization code for a user token pair."""
    form = {
        "client_id": client_id,
        "client_secret": client_secret,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": redirect_uri,
    }
    return await asyncio.to_thread(_request_tokens, form)


async def validate_token(access_token: str | None) -> None:
    """Raise AuthError unless Twitch accepts ``access_token``."""
    if not access_token:
        raise AuthError("No OAuth token")  # noqa: TRY003, EM101
    status = await asyncio.to_thread(_get_validate_status, access_token)
    if status == HTTPStatus.UNAUTHORIZED:
        raise AuthError("Twitch rejected the stored OAuth token")  # noqa: TRY003, EM101
    if status != HTTPStatus.OK:
        msg = f"expected status 200, got {status}"
        raise TransportError(msg)


async def refresh_token(client_id: str, client_secret: str, refresh: str | None) -> AuthResult:
    """Trade a refresh token for a new token pair."""
    if not refresh:
        raise AuthError("No refresh token")  # noqa: TRY003, EM101
    form = {
        "client_id": client_id,
        "client_secret": client_secret,
        "grant_type": "refresh_token",
        "refresh_token": refresh,
    }
    auth = await asyncio.to_thread(_request_tokens, form)
    logger.info("Refreshed Twitch OAuth")
    return auth


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _request_tokens(form: dict[str, str], timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> AuthResult:
    try:
        response = requests.post(TOKEN_URL, data=form, timeout=timeout_seconds)
    except requests.RequestException as exc:
        msg = f"Twitch token request failed. {exc}"
        raise TransportError(msg) from exc
    return _parse_token_response(response)


def _parse_token_response(response: requests.Response) -> AuthResult:
    """Map a token endpoint response onto AuthResult or the error taxonomy."""
    if response.status_code in (HTTPStatus.BAD_REQUEST, HTTPStatus.UNAUTHORIZED):
        raise AuthError("Invalid authorization code")  # noqa: TRY003, EM101
    if response.status_code != HTTPStatus.OK:
        msg = f"expected status 200, got {response.status_code}"
        raise TransportError(msg)
    try:
        payload = response.json()
    except ValueError as exc:
        msg = f"Twitch token response is not JSON. {exc}"
        raise TransportError(msg) from exc
    if not isinstance(payload, dict) or not payload.get("access_token") or not payload.get("refresh_token"):
        raise TransportError("Twitch token response is missing tokens")  # noqa: TRY003, EM101
    return AuthResult.model_validate(payload)


def _get_validate_status(access_token: str, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> int:
    try:
        response = requests.get(
            VALIDATE_URL,
            headers={"Authorization": f"OAuth {access_token}"},
            timeout=timeout_seconds,
        )
    except requests.RequestException as exc:
        msg = f"Twitch token validation failed. {exc}"
        raise TransportError(msg) from exc
    return response.status_code
