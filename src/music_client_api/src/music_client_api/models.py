"""Closed track variant returned by music providers."""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "SPOTIFY_TRACK_URL",
    "SoundcloudTrack",
    "SpotifyTrack",
    "Track",
    "track_url",
]

SPOTIFY_TRACK_URL = "https://open.spotify.com/track/{track_id}"


class SpotifyTrack(BaseModel):
    """A Spotify catalogue track, identified by its track id."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["spotify"] = "spotify"
    id: str


class SoundcloudTrack(BaseModel):
    """A SoundCloud track, identified by its public permalink."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["soundcloud"] = "soundcloud"
    permalink_url: str


Track = Annotated[SpotifyTrack | SoundcloudTrack, Field(discriminator="kind")]


def track_url(track: Track) -> str:
    """Return the shareable URL for any track variant."""
    match track:
        case SpotifyTrack(id=track_id):
            return SPOTIFY_TRACK_URL.format(track_id=track_id)
        case SoundcloudTrack(permalink_url=permalink):
            return permalink
    msg = f"Unsupported track variant: {type(track).__name__}"
    raise TypeError(msg)
