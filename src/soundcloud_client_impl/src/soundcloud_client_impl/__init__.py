"""Public exports for the SoundCloud client implementation package."""

from soundcloud_client_impl.soundcloud_impl import SoundcloudClient

__all__ = ["SoundcloudClient"]
