"""Now-playing bot orchestrator.

Drives authentication cycles: serves the OAuth callback routes, waits until
every required credential has arrived, runs the Twitch chat listener, and
starts over when a restart is requested or the listener exits.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

import spotify_client_impl.oauth as spotify_oauth
import twitch_listener.auth as twitch_oauth
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from soundcloud_client_impl import SoundcloudClient
from spotify_client_impl import SpotifyClient
from twitch_listener import TwitchListener

from orchestrator.callback_routes import CallbackReceiver, router
from orchestrator.config import Config
from orchestrator.credentials import CredentialStore
from orchestrator.errors import AuthError, ConfigError, NowPlayingError, RestartSignal, TransportError
from orchestrator.lifecycle import LifecycleState, LifecycleStatus
from orchestrator.readiness import ReadinessGate

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from music_client_api import Client
    from orchestrator.credentials import CredentialSnapshot
    from orchestrator.models import AuthResult

logger = logging.getLogger("orchestrator")

T = TypeVar("T")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000
DEFAULT_RETRY_DELAY_SECONDS = 5.0
SERVER_START_POLL_SECONDS = 0.05


class CycleOutcome(str, Enum):
    """How one authentication/listening cycle ended."""

    RESTARTED = "restarted"
    LISTENER_EXITED = "listener_exited"


def build_app(orchestrator: Orchestrator) -> FastAPI:
    """Create the callback/admin app bound to ``orchestrator``."""
    app = FastAPI(title="Now Playing Bot", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.include_router(router)
    app.state.orchestrator = orchestrator
    return app


class Orchestrator:
    """Owns the shared state of the bot and runs its cycles.

    Attributes:
        lifecycle: Status shared by the callback routes and the chat listener.
        gate: Readiness gate fired once the cycle's credentials are complete.
        store: Credential store of the current cycle.
        receiver: Callback receiver writing into ``store``.
        app: FastAPI app serving the callback and admin routes.

    """

    def __init__(
        self,
        config: Config,
        *,
        config_path: Path | None = None,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        serve_http: bool = True,
    ) -> None:
        self._config = config
        self._config_lock = asyncio.Lock()
        self._config_path = config_path
        self._host = host
        self._port = port
        self._retry_delay_seconds = retry_delay_seconds
        self._serve_http = serve_http
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None
        self.lifecycle = LifecycleState()
        self.gate = ReadinessGate()
        self.store = CredentialStore(self.gate.signal, secondary_enabled=config.spotify_enabled)
        self.receiver = self._build_receiver(config, self.store)
        self.app = build_app(self)

    # -----------------------------------------------------------------------
    # Config cell
    # -----------------------------------------------------------------------

    async def get_config(self) -> Config:
        async with self._config_lock:
            return self._config

    async def replace_config(self, config: Config) -> None:
        """Swap the live config; feature switches take effect next cycle."""
        async with self._config_lock:
            self._config = config
        logger.info("Config replaced")

    async def save_config(self) -> Path:
        """Persist the live config, raising ConfigError on failure."""
        config = await self.get_config()
        return await asyncio.to_thread(config.save_to_file, self._config_path)

    async def store_tokens(self, *, twitch: AuthResult | None = None, spotify: AuthResult | None = None) -> None:
        """Record new tokens in the live config and persist them."""
        async with self._config_lock:
            if twitch is not None:
                self._config = self._config.with_twitch_auth(twitch)
            if spotify is not None:
                self._config = self._config.with_spotify_auth(spotify)
        try:
            await self.save_config()
        except ConfigError as exc:
            logger.warning("Failed to persist tokens. %s", exc)

    # -----------------------------------------------------------------------
    # Restart
    # -----------------------------------------------------------------------

    async def request_restart(self) -> bool:
        """Interrupt the running cycle; ignored unless the status is RUNNING."""
        accepted = await self.lifecycle.set(LifecycleStatus.RESTARTING, expected=LifecycleStatus.RUNNING)
        if accepted:
            logger.info("Restart requested")
        else:
            logger.info("Ignoring restart request while %s", self.lifecycle.status.value)
        return accepted

    # -----------------------------------------------------------------------
    # Cycles
    # -----------------------------------------------------------------------

    async def run(self, *, cycles: int | None = None) -> None:
        """Run cycles forever, or ``cycles`` times."""
        completed = 0
        while cycles is None or completed < cycles:
            outcome = await self.run_cycle()
            completed += 1
            if outcome is CycleOutcome.LISTENER_EXITED and self._retry_delay_seconds > 0:
                logger.info("Starting the next cycle in %.1f seconds", self._retry_delay_seconds)
                await asyncio.sleep(self._retry_delay_seconds)

    async def run_cycle(self) -> CycleOutcome:
        """Authenticate, listen, then reset state for the next cycle."""
        config = await self.get_config()
        if self.store.secondary_enabled != config.spotify_enabled:
            await self._reset_cycle_state(config)
        try:
            await self._start_server()
            await self.lifecycle.set(LifecycleStatus.RUNNING)
            snapshot = await self._race(self._collect_credentials(config))
            listener = self._build_listener(config, snapshot)
            await self._race(listener.run())
        except RestartSignal:
            logger.info("Cycle interrupted by restart")
            outcome = CycleOutcome.RESTARTED
        except NowPlayingError as exc:
            logger.warning("Listener exited. %s", exc)
            outcome = CycleOutcome.LISTENER_EXITED
        except Exception:
            logger.exception("Listener crashed")
            outcome = CycleOutcome.LISTENER_EXITED
        else:
            logger.info("Listener exited")
            outcome = CycleOutcome.LISTENER_EXITED
        finally:
            await self._stop_server()
        await self._reset_cycle_state(await self.get_config())
        await self.lifecycle.set(LifecycleStatus.STOPPED)
        return outcome

    async def _collect_credentials(self, config: Config) -> CredentialSnapshot:
        """Reuse stored tokens where possible, otherwise wait for the callbacks."""
        twitch_auth = await self._stored_twitch_auth(config)
        if twitch_auth is not None:
            await self.store.record_primary(twitch_auth)
        spotify_auth = config.spotify_auth() if config.spotify_enabled else None
        if spotify_auth is not None:
            await self.store.record_secondary(spotify_auth)

        if not await self.store.is_delivered():
            if twitch_auth is None:
                logger.info("Authorize Twitch: %s", self.receiver.primary_auth_url)
            if config.spotify_enabled and spotify_auth is None:
                logger.info("Authorize Spotify: %s", self.receiver.secondary_auth_url)

        await self.gate.wait()
        snapshot = await self.store.snapshot()
        await self.store.acknowledge()
        if twitch_auth is None or (config.spotify_enabled and spotify_auth is None):
            await self.store_tokens(twitch=snapshot.primary_auth, spotify=snapshot.secondary_auth)
        return snapshot

    async def _stored_twitch_auth(self, config: Config) -> AuthResult | None:
        """Validate the stored Twitch token, refreshing it once if needed."""
        stored = config.twitch_auth()
        if stored is None:
            logger.info("No stored Twitch tokens")
            return None
        try:
            await twitch_oauth.validate_token(stored.access_token)
        except NowPlayingError as exc:
            logger.info("Stored Twitch token did not validate. %s", exc)
        else:
            logger.info("Stored Twitch token is valid")
            return stored
        try:
            refreshed = await twitch_oauth.refresh_token(
                config.twitch_client_id,
                config.twitch_client_secret,
                stored.refresh_token,
            )
        except NowPlayingError as exc:
            logger.warning("Twitch token refresh failed, re-authentication required. %s", exc)
            return None
        await self.store_tokens(twitch=refreshed)
        return refreshed

    def _build_listener(self, config: Config, snapshot: CredentialSnapshot) -> TwitchListener:
        """Turn the delivered credentials into provider clients."""
        if snapshot.primary_auth is None:
            raise AuthError("Credentials were delivered without Twitch tokens")  # noqa: TRY003, EM101
        music_clients: list[Client] = []
        if config.spotify_enabled and snapshot.secondary_auth is not None and config.spotify_client_id:
            music_clients.append(
                SpotifyClient(
                    config.spotify_client_id,
                    config.spotify_client_secret or "",
                    snapshot.secondary_auth,
                    on_refresh=self._on_spotify_refresh,
                )
            )
        if config.soundcloud_enabled:
            soundcloud = SoundcloudClient.from_token(config.soundcloud_oauth)
            if soundcloud is None:
                logger.warning("SoundCloud is enabled but no SoundCloud OAuth token is configured")
            else:
                music_clients.append(soundcloud)
        return TwitchListener(
            config.twitch_client_id,
            config.twitch_client_secret,
            config.twitch_username,
            snapshot.primary_auth,
            music_clients,
            self.lifecycle,
            on_token_refresh=self._on_twitch_refresh,
        )

    async def _on_twitch_refresh(self, auth: AuthResult) -> None:
        await self.store_tokens(twitch=auth)

    async def _on_spotify_refresh(self, auth: AuthResult) -> None:
        await self.store_tokens(spotify=auth)

    async def _race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless a restart broadcast arrives first.

        Raises:
            RestartSignal: The interrupt won; the awaitable was cancelled and unwound.

        """
        task = asyncio.ensure_future(awaitable)
        interrupt = asyncio.ensure_future(self.lifecycle.wait_for_interrupt())
        try:
            await asyncio.wait({task, interrupt}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            interrupt.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled():
            raise RestartSignal
        return task.result()

    async def _reset_cycle_state(self, config: Config) -> None:
        """Re-arm the gate and install a fresh store and receiver."""
        signal_ = await self.gate.rearm()
        self.store = CredentialStore(signal_, secondary_enabled=config.spotify_enabled)
        self.receiver = self._build_receiver(config, self.store)

    def _build_receiver(self, config: Config, store: CredentialStore) -> CallbackReceiver:
        redirect_base = f"http://localhost:{self._port}"

        async def exchange_twitch(code: str) -> AuthResult:
            return await twitch_oauth.exchange_code(
                config.twitch_client_id,
                config.twitch_client_secret,
                code,
                redirect_uri=f"{redirect_base}/callback",
            )

        async def exchange_spotify(code: str) -> AuthResult:
            return await spotify_oauth.exchange_code(
                code,
                config.spotify_client_id or "",
                config.spotify_client_secret or "",
                redirect_uri=f"{redirect_base}/spotifycallback",
            )

        spotify_ready = config.spotify_enabled
        return CallbackReceiver(
            store,
            exchange_primary=exchange_twitch,
            primary_auth_url=twitch_oauth.make_oauth_url(config.twitch_client_id, f"{redirect_base}/callback"),
            exchange_secondary=exchange_spotify if spotify_ready else None,
            secondary_auth_url=(
                spotify_oauth.make_oauth_url(config.spotify_client_id or "", f"{redirect_base}/spotifycallback")
                if spotify_ready
                else None
            ),
        )

    # -----------------------------------------------------------------------
    # Embedded HTTP server
    # -----------------------------------------------------------------------

    async def _start_server(self) -> None:
        if not self._serve_http or self._server_task is not None:
            return
        server_config = uvicorn.Config(self.app, host=self._host, port=self._port, log_level="info", lifespan="off")
        server = uvicorn.Server(server_config)
        task = asyncio.create_task(self._serve_callbacks(server))
        self._server, self._server_task = server, task
        while not server.started and not task.done():
            await asyncio.sleep(SERVER_START_POLL_SECONDS)
        if not server.started:
            self._server = None
            self._server_task = None
            await task
            msg = f"Callback server on {self._host}:{self._port} stopped before it started listening"
            raise TransportError(msg)
        logger.info("Callback server listening on http://%s:%d", self._host, self._port)

    async def _serve_callbacks(self, server: uvicorn.Server) -> None:
        # uvicorn exits the process when startup fails, e.g. on a port that is already taken.
        try:
            await server.serve()
        except SystemExit as exc:
            msg = f"Callback server failed to start on {self._host}:{self._port} (exit code {exc.code})"
            raise TransportError(msg) from exc

    async def _stop_server(self) -> None:
        server, task = self._server, self._server_task
        self._server = None
        self._server_task = None
        if server is None or task is None:
            return
        server.should_exit = True
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Callback server stopped")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Twitch bot that replies to !np with the current track.")
    parser.add_argument(
        "--port",
        "--internal-port",
        dest="port",
        type=int,
        default=DEFAULT_PORT,
        help="Callback and admin server port (default: 3000).",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to config.json.")
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=DEFAULT_RETRY_DELAY_SECONDS,
        help="Seconds to wait before a new cycle after the listener exits.",
    )
    parser.add_argument(
        "--web-dashboard",
        action="store_true",
        help="Announce the admin routes used by the web dashboard, as WEB_DASHBOARD_ENABLED does.",
    )
    return parser.parse_args(argv)


async def _serve(orchestrator: Orchestrator) -> None:
    loop = asyncio.get_running_loop()
    if hasattr(signal, "SIGHUP"):
        loop.add_signal_handler(signal.SIGHUP, lambda: asyncio.ensure_future(orchestrator.request_restart()))
    await orchestrator.run()


def main(argv: list[str] | None = None) -> int:
    """Console entry point."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = _parse_args(argv)
    try:
        config = Config.load(args.config)
    except ConfigError as exc:
        logger.error("%s", exc)  # noqa: TRY400
        return 1
    if config.web_dashboard_enabled or args.web_dashboard:
        logger.info(
            "Web dashboard enabled; settings and restart are served at http://%s:%d (/config, /saveconfig, /restart)",
            DEFAULT_HOST,
            args.port,
        )
    orchestrator = Orchestrator(
        config,
        config_path=args.config,
        port=args.port,
        retry_delay_seconds=args.retry_delay,
    )
    try:
        asyncio.run(_serve(orchestrator))
    except KeyboardInterrupt:
        logger.info("Shutting down")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
