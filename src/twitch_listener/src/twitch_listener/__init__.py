"""Twitch chat listener and OAuth helpers."""

from twitch_listener.auth import CALLBACK_URI, exchange_code, make_oauth_url, refresh_token, validate_token
from twitch_listener.main import NOW_PLAYING_COMMANDS, TwitchListener

__all__ = [
    "CALLBACK_URI",
    "NOW_PLAYING_COMMANDS",
    "TwitchListener",
    "exchange_code",
    "make_oauth_url",
    "refresh_token",
    "validate_token",
]
