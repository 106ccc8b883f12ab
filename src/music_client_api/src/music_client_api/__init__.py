"""Public export surface for ``music_client_api``."""

from music_client_api.client import Client
from music_client_api.models import SoundcloudTrack, SpotifyTrack, Track, track_url

__all__ = [
    "Client",
    "SoundcloudTrack",
    "SpotifyTrack",
    "Track",
    "track_url",
]
