"""Public exports for the Spotify client implementation package."""

from spotify_client_impl.oauth import CALLBACK_URI, exchange_code, make_oauth_url, refresh_access_token
from spotify_client_impl.spotify_impl import SpotifyClient

__all__ = [
    "CALLBACK_URI",
    "SpotifyClient",
    "exchange_code",
    "make_oauth_url",
    "refresh_access_token",
]
