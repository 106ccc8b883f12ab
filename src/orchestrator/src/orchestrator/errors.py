"""Error taxonomy shared by the orchestrator and its collaborators."""

from __future__ import annotations

__all__ = [
    "AuthError",
    "ConfigError",
    "NowPlayingError",
    "RestartSignal",
    "TransportError",
]


class NowPlayingError(Exception):
    """Base error carrying a kind label and a human-readable message."""

    kind = "UnknownError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class AuthError(NowPlayingError):
    """Token exchange, validation, or refresh was rejected."""

    kind = "AuthError"


class TransportError(NowPlayingError):
    """Network failure or unexpected response from an external API."""

    kind = "TransportError"


class ConfigError(NowPlayingError):
    """Persisted or environment configuration is missing or malformed."""

    kind = "ConfigError"


class RestartSignal(NowPlayingError):
    """Control-flow signal: abandon the current wait and begin a new cycle."""

    kind = "Restarting"

    def __init__(self, message: str = "Restarting") -> None:
        super().__init__(message)
