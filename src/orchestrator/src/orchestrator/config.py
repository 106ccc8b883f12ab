"""Process configuration: JSON file on disk, overridden by environment variables."""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from orchestrator.errors import ConfigError
from orchestrator.models import AuthResult

load_dotenv()

logger = logging.getLogger("orchestrator.config")

APP_DIR_NAME = "nowplaying-ttv"
CONFIG_FILE_NAME = "config.json"
TRUE_VALUES = {"true", "1", "yes", "y", "on"}
FALSE_VALUES = {"false", "0", "no", "n", "off"}

# Environment variable -> field name. Booleans are parsed, everything else is taken verbatim.
ENV_FIELDS = {
    "SOUNDCLOUD_ENABLED": "soundcloud_enabled",
    "SOUNDCLOUD_OAUTH": "soundcloud_oauth",
    "SPOTIFY_ENABLED": "spotify_enabled",
    "SPOTIFY_CLIENT_ID": "spotify_client_id",
    "SPOTIFY_CLIENT_SECRET": "spotify_client_secret",
    "SPOTIFY_OAUTH": "spotify_oauth",
    "SPOTIFY_OAUTH_REFRESH": "spotify_oauth_refresh",
    "TWITCH_CLIENT_ID": "twitch_client_id",
    "TWITCH_CLIENT_SECRET": "twitch_client_secret",
    "TWITCH_USERNAME": "twitch_username",
    "TWITCH_OAUTH": "twitch_oauth",
    "TWITCH_OAUTH_REFRESH": "twitch_oauth_refresh",
    "WEB_DASHBOARD_ENABLED": "web_dashboard_enabled",
}
BOOL_FIELDS = {"soundcloud_enabled", "spotify_enabled", "web_dashboard_enabled"}
REQUIRED_TWITCH_ENV = ("TWITCH_CLIENT_ID", "TWITCH_CLIENT_SECRET", "TWITCH_USERNAME")
REQUIRED_SPOTIFY_ENV = ("SPOTIFY_CLIENT_ID", "SPOTIFY_CLIENT_SECRET")
SPOTIFY_CREDENTIAL_FIELDS = ("spotify_client_id", "spotify_client_secret")


class Config(BaseModel):
    """Credentials and feature switches for one bot process.

    Unknown keys in a loaded file are kept so that saving does not drop them.
    """

    model_config = ConfigDict(extra="allow")

    soundcloud_enabled: bool = False
    soundcloud_oauth: str | None = None

    spotify_enabled: bool = False
    spotify_client_id: str | None = None
    spotify_client_secret: str | None = None
    spotify_oauth: str | None = None
    spotify_oauth_refresh: str | None = None

    twitch_client_id: str
    twitch_client_secret: str
    twitch_username: str
    twitch_oauth: str | None = None
    twitch_oauth_refresh: str | None = None

    web_dashboard_enabled: bool = False

    @model_validator(mode="after")
    def _spotify_credentials_present(self) -> Config:
        if self.spotify_enabled:
            missing = [name for name in SPOTIFY_CREDENTIAL_FIELDS if not getattr(self, name)]
            if missing:
                msg = f"spotify_enabled is true but {', '.join(missing)} is not set"
                raise ValueError(msg)
        return self

    # -----------------------------------------------------------------------
    # Loading
    # -----------------------------------------------------------------------

    @classmethod
    def from_json(cls, path: Path | None = None) -> Config:
        """Load a config from disk, raising ConfigError when missing or malformed."""
        location = path or config_path()
        try:
            raw = location.read_text(encoding="utf-8")
        except OSError as exc:
            msg = f"Unable to open {location}. {exc}"
            raise ConfigError(msg) from exc
        try:
            return cls.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            msg = f"The JSON in {location} doesn't match the config schema. {exc}"
            raise ConfigError(msg) from exc

    @classmethod
    def from_env(cls, existing: Config | None = None) -> Config:
        """Overlay environment variables onto ``existing``, or build a config from the environment alone."""
        if existing is not None:
            overrides = _env_overrides()
            if not overrides:
                return existing
            logger.info("Environment overrides config fields: %s", ", ".join(sorted(overrides)))
            return _validated({**existing.model_dump(), **overrides}, "The environment overrides")

        missing = [name for name in REQUIRED_TWITCH_ENV if not os.environ.get(name)]
        if missing:
            msg = f"{', '.join(missing)} is not set"
            raise ConfigError(msg)

        spotify_enabled = parse_bool(os.environ.get("SPOTIFY_ENABLED"))
        if spotify_enabled:
            missing = [name for name in REQUIRED_SPOTIFY_ENV if not os.environ.get(name)]
            if missing:
                msg = f"SPOTIFY_ENABLED is true but {', '.join(missing)} is not set"
                raise ConfigError(msg)

        values = _env_overrides()
        if not spotify_enabled:
            for field in ("spotify_client_id", "spotify_client_secret", "spotify_oauth", "spotify_oauth_refresh"):
                values.pop(field, None)
        return _validated(values, "The environment")

    @classmethod
    def load(cls, path: Path | None = None) -> Config:
        """Load the JSON config with environment overrides, falling back to the environment alone."""
        try:
            existing: Config | None = cls.from_json(path)
        except ConfigError as exc:
            logger.warning("A non fatal error occurred while loading the config file. %s", exc)
            existing = None
        return cls.from_env(existing)

    # -----------------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------------

    def save_to_file(self, path: Path | None = None) -> Path:
        """Write the config as pretty JSON, raising ConfigError on failure."""
        location = path or config_path()
        try:
            location.parent.mkdir(parents=True, exist_ok=True)
            location.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        except OSError as exc:
            msg = f"Unable to write {location}. {exc}"
            raise ConfigError(msg) from exc
        logger.info("Saved config to %s", location)
        return location

    # -----------------------------------------------------------------------
    # Credential helpers
    # -----------------------------------------------------------------------

    def twitch_auth(self) -> AuthResult | None:
        """Return stored Twitch tokens, if both halves are present."""
        if not self.twitch_oauth or not self.twitch_oauth_refresh:
            return None
        return AuthResult(access_token=self.twitch_oauth, refresh_token=self.twitch_oauth_refresh)

    def spotify_auth(self) -> AuthResult | None:
        """Return stored Spotify tokens, if both halves are present."""
        if not self.spotify_oauth or not self.spotify_oauth_refresh:
            return None
        return AuthResult(access_token=self.spotify_oauth, refresh_token=self.spotify_oauth_refresh)

    def with_twitch_auth(self, auth: AuthResult) -> Config:
        """Return a copy carrying new Twitch tokens."""
        return self.model_copy(update={"twitch_oauth": auth.access_token, "twitch_oauth_refresh": auth.refresh_token})

    def with_spotify_auth(self, auth: AuthResult) -> Config:
        """Return a copy carrying new Spotify tokens."""
        return self.model_copy(update={"spotify_oauth": auth.access_token, "spotify_oauth_refresh": auth.refresh_token})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_bool(value: str | None) -> bool:
    """Parse a loose boolean; unknown non-empty strings count as true."""
    if value is None:
        return False
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    return normalized not in FALSE_VALUES


def default_path() -> Path:
    """Return the per-user default config location."""
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if not appdata:
            raise ConfigError("APPDATA is not set")  # noqa: TRY003, EM101
        return Path(appdata) / APP_DIR_NAME / CONFIG_FILE_NAME
    return Path.home() / ".config" / APP_DIR_NAME / CONFIG_FILE_NAME


def config_path() -> Path:
    """Return the active config location, honouring CONFIG_FILE."""
    override = os.environ.get("CONFIG_FILE")
    if override:
        return Path(override)
    return default_path()


def _env_overrides() -> dict[str, object]:
    values: dict[str, object] = {}
    for env_name, field in ENV_FIELDS.items():
        raw = os.environ.get(env_name)
        if raw is None:
            continue
        values[field] = parse_bool(raw) if field in BOOL_FIELDS else raw
    return values


def _validated(values: dict[str, object], source: str) -> Config:
    try:
        return Config.model_validate(values)
    except ValidationError as exc:
        msg = f"{source} don't match the config schema. {exc}"
        raise ConfigError(msg) from exc
