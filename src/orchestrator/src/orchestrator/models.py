"""Pydantic schemas shared between the orchestrator and provider helpers."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AuthResult(BaseModel):
    """Token pair returned by an OAuth code exchange or refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    expires_in: int | None = None
    scope: list[str] = Field(default_factory=list)
    token_type: str | None = None

    @field_validator("scope", mode="before")
    @classmethod
    def _split_scope(cls, value: object) -> object:
        # Twitch returns a list, Spotify a space-separated string.
        if isinstance(value, str):
            return value.split()
        if value is None:
            return []
        return value


class RestartReply(BaseModel):
    """Reply payload for the restart route."""

    status: str


class HealthReply(BaseModel):
    """Reply payload for the health route."""

    status: str
    lifecycle: str
    authenticated: bool
