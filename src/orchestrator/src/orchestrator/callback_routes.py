"""OAuth callback and admin routes for the orchestrator."""

from __future__ import annotations

import logging
from enum import Enum
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from orchestrator.config import Config
from orchestrator.errors import AuthError, ConfigError, TransportError
from orchestrator.models import HealthReply, RestartReply

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from orchestrator.credentials import CredentialStore
    from orchestrator.main import Orchestrator
    from orchestrator.models import AuthResult

    ExchangeCode = Callable[[str], Awaitable[AuthResult]]

__all__ = ["CallbackOutcome", "CallbackReceiver", "router"]

logger = logging.getLogger("orchestrator.callbacks")

router = APIRouter()

RECEIVED_TEXT = "Callback Received! You can close this tab now."
ALREADY_AUTHENTICATED_TEXT = "You have already authenticated. You can close this tab now."
INVALID_CALLBACK_TEXT = "Invalid Callback Response"


class CallbackOutcome(str, Enum):
    """Result of one authorization redirect."""

    RECEIVED = "received"
    ALREADY_AUTHENTICATED = "already_authenticated"


class CallbackReceiver:
    """Turns authorization redirects into CredentialStore writes for one cycle.

    Attributes:
        store: Credential store of the cycle this receiver was built for.
        primary_auth_url: Twitch consent URL offered again after a failure.
        secondary_auth_url: Spotify consent URL, or None when Spotify is disabled.

    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        exchange_primary: ExchangeCode,
        primary_auth_url: str,
        exchange_secondary: ExchangeCode | None = None,
        secondary_auth_url: str | None = None,
    ) -> None:
        self.store = store
        self.primary_auth_url = primary_auth_url
        self.secondary_auth_url = secondary_auth_url
        self._exchange_primary = exchange_primary
        self._exchange_secondary = exchange_secondary

    @property
    def secondary_enabled(self) -> bool:
        return self._exchange_secondary is not None

    async def on_primary_callback(self, params: Mapping[str, str]) -> CallbackOutcome:
        """Exchange a Twitch code and record it.

        Raises:
            AuthError: The redirect carried an error, no code, or the exchange was rejected.
            TransportError: The token endpoint could not be reached.

        """
        return await self._handle(params, "Twitch", self._exchange_primary, self.store.record_primary)

    async def on_secondary_callback(self, params: Mapping[str, str]) -> CallbackOutcome:
        """Exchange a Spotify code and record it."""
        if self._exchange_secondary is None:
            raise AuthError("Spotify is not enabled")  # noqa: TRY003, EM101
        return await self._handle(params, "Spotify", self._exchange_secondary, self.store.record_secondary)

    async def _handle(
        self,
        params: Mapping[str, str],
        provider: str,
        exchange: ExchangeCode,
        record: Callable[[AuthResult], Awaitable[bool]],
    ) -> CallbackOutcome:
        # Codes are single use, so never spend one once the set is complete.
        if await self.store.is_delivered():
            logger.info("%s callback after credentials were delivered", provider)
            return CallbackOutcome.ALREADY_AUTHENTICATED
        error = params.get("error")
        if error:
            msg = f"{provider} authorization failed: {params.get('error_description') or error}"
            raise AuthError(msg)
        code = params.get("code")
        if not code:
            raise AuthError(INVALID_CALLBACK_TEXT)
        auth = await exchange(code)
        if not await record(auth):
            if await self.store.is_delivered():
                return CallbackOutcome.ALREADY_AUTHENTICATED
            logger.info("%s auth code received, waiting for the remaining provider", provider)
        return CallbackOutcome.RECEIVED


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("/callback")
async def twitch_callback(request: Request) -> PlainTextResponse:
    """Receive the Twitch authorization redirect."""
    receiver = _orchestrator(request).receiver
    try:
        outcome = await receiver.on_primary_callback(request.query_params)
    except (AuthError, TransportError) as exc:
        logger.warning("Twitch callback failed. %s", exc)
        return _retry_response(exc, receiver.primary_auth_url)
    return _outcome_response(outcome)


@router.get("/spotifycallback")
async def spotify_callback(request: Request) -> PlainTextResponse:
    """Receive the Spotify authorization redirect."""
    receiver = _orchestrator(request).receiver
    if not receiver.secondary_enabled:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail="Spotify is not enabled.")
    try:
        outcome = await receiver.on_secondary_callback(request.query_params)
    except (AuthError, TransportError) as exc:
        logger.warning("Spotify callback failed. %s", exc)
        return _retry_response(exc, receiver.secondary_auth_url)
    return _outcome_response(outcome)


@router.api_route("/restart", methods=["GET", "POST"], response_model=RestartReply)
async def restart(request: Request) -> RestartReply:
    """Ask the orchestrator to abandon the current cycle."""
    orchestrator = _orchestrator(request)
    if await orchestrator.request_restart():
        return RestartReply(status="restarting")
    return RestartReply(status=orchestrator.lifecycle.status.value)


@router.get("/config")
async def get_config(request: Request) -> dict[str, Any]:
    """Return the live config."""
    config = await _orchestrator(request).get_config()
    return config.model_dump()


@router.post("/config")
async def replace_config(request: Request) -> dict[str, Any]:
    """Replace the live config with the posted JSON body."""
    try:
        config = Config.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=HTTPStatus.BAD_REQUEST, detail="Invalid config body.") from exc
    await _orchestrator(request).replace_config(config)
    return config.model_dump()


@router.post("/saveconfig")
async def save_config(request: Request) -> dict[str, str]:
    """Write the live config to disk."""
    try:
        path = await _orchestrator(request).save_config()
    except ConfigError as exc:
        logger.warning("Saving config failed. %s", exc)
        raise HTTPException(status_code=HTTPStatus.INTERNAL_SERVER_ERROR, detail=exc.message) from exc
    return {"status": "saved", "path": str(path)}


@router.get("/health", response_model=HealthReply)
async def health(request: Request) -> HealthReply:
    """Return process status and whether this cycle has its credentials."""
    orchestrator = _orchestrator(request)
    return HealthReply(
        status="ok",
        lifecycle=orchestrator.lifecycle.status.value,
        authenticated=await orchestrator.receiver.store.is_delivered(),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def _outcome_response(outcome: CallbackOutcome) -> PlainTextResponse:
    if outcome is CallbackOutcome.ALREADY_AUTHENTICATED:
        return PlainTextResponse(ALREADY_AUTHENTICATED_TEXT)
    return PlainTextResponse(RECEIVED_TEXT)


def _retry_response(exc: AuthError | TransportError, auth_url: str | None) -> PlainTextResponse:
    lines = [exc.message]
    if auth_url:
        lines.append(f"Authorization codes are single use. Try again: {auth_url}")
    return PlainTextResponse("\n".join(lines), status_code=HTTPStatus.BAD_REQUEST)
