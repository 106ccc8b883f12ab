"""Tests for the orchestrator cycle: gating, listener start and restarts."""

from __future__ import annotations

import asyncio
import json
import logging
import socket
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import orchestrator.main as app_module
import pytest
import twitch_listener.auth as twitch_oauth
from orchestrator.callback_routes import CallbackOutcome
from orchestrator.config import Config
from orchestrator.errors import AuthError, TransportError
from orchestrator.lifecycle import LifecycleStatus
from orchestrator.main import CycleOutcome, Orchestrator
from orchestrator.models import AuthResult

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

STORED_AUTH = AuthResult(access_token="stored-access", refresh_token="stored-refresh")
REFRESHED_AUTH = AuthResult(access_token="refreshed-access", refresh_token="refreshed-refresh")
CALLBACK_AUTH = AuthResult(access_token="callback-access", refresh_token="callback-refresh")


class _FakeListener:
    """Stands in for TwitchListener; runs until released or cancelled."""

    instances: list[_FakeListener] = []
    error: Exception | None = None

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.client_id, self.client_secret, self.username, self.auth, music_clients, self.lifecycle = args
        self.music_clients = list(music_clients)
        self.on_token_refresh = kwargs.get("on_token_refresh")
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.cancelled = False
        _FakeListener.instances.append(self)

    async def run(self) -> None:
        self.started.set()
        if _FakeListener.error is not None:
            raise _FakeListener.error
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


@pytest.fixture(autouse=True)
def fake_listener(monkeypatch: pytest.MonkeyPatch) -> type[_FakeListener]:
    """Replace the chat listener and reset recorded instances."""
    _FakeListener.instances = []
    _FakeListener.error = None
    monkeypatch.setattr(app_module, "TwitchListener", _FakeListener)
    return _FakeListener


@pytest.fixture
def make_orchestrator(tmp_path: Path) -> Callable[..., Orchestrator]:
    """Build orchestrators that persist into tmp_path and serve no HTTP."""

    def _make(**overrides: object) -> Orchestrator:
        values: dict[str, object] = {
            "twitch_client_id": "cid",
            "twitch_client_secret": "secret",
            "twitch_username": "streamer",
        }
        values.update(overrides)
        return Orchestrator(
            Config.model_validate(values),
            config_path=tmp_path / "config.json",
            serve_http=False,
            retry_delay_seconds=0,
        )

    return _make


async def _eventually(predicate: Callable[[], bool]) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=2)


async def _started_listener() -> _FakeListener:
    await _eventually(lambda: bool(_FakeListener.instances))
    listener = _FakeListener.instances[-1]
    await asyncio.wait_for(listener.started.wait(), timeout=2)
    return listener


# ---------------------------------------------------------------------------
# Reuse of persisted tokens
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_valid_token_skips_callbacks(
    make_orchestrator: Callable[..., Orchestrator],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A stored token that validates starts the listener without any callback."""
    validate = AsyncMock(return_value=None)
    monkeypatch.setattr(twitch_oauth, "validate_token", validate)
    orchestrator = make_orchestrator(twitch_oauth="stored-access", twitch_oauth_refresh="stored-refresh")

    cycle = asyncio.create_task(orchestrator.run_cycle())
    listener = await _started_listener()

    assert listener.auth == STORED_AUTH
    assert orchestrator.lifecycle.status is LifecycleStatus.RUNNING
    assert await orchestrator.store.is_acknowledged()
    validate.assert_awaited_once_with("stored-access")

    assert await orchestrator.request_restart() is True
    assert await cycle is CycleOutcome.RESTARTED


@pytest.mark.asyncio
async def test_invalid_token_is_refreshed_and_persisted(
    make_orchestrator: Callable[..., Orchestrator],
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """A rejected token is refreshed, used and written to disk."""
    monkeypatch.setattr(twitch_oauth, "validate_token", AsyncMock(side_effect=AuthError("expired")))
    refresh = AsyncMock(return_value=REFRESHED_AUTH)
    monkeypatch.setattr(twitch_oauth, "refresh_token", refresh)
    orchestrator = make_orchestrator(twitch_oauth="stored-access", twitch_oauth_refresh="stored-refresh")

    cycle = asyncio.create_task(orchestrator.run_cycle())
    listener = await _started_listener()

    assert listener.auth == REFRESHED_AUTH
    refresh.assert_awaited_once_with("cid", "secret", "stored-refresh")
    saved = json.loads((tmp_path / "config.json").read_text(encoding="utf-8"))
    assert saved["twitch_oauth"] == "refreshed-access"
    assert (await orchestrator.get_config()).twitch_oauth_refresh == "refreshed-refresh"

    await orchestrator.request_restart()
    await cycle


@pytest.mark.asyncio
async def test_failed_refresh_waits_for_callback(
    make_orchestrator: Callable[..., Orchestrator],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """When refresh also fails the cycle waits for the browser flow."""
    monkeypatch.setattr(twitch_oauth, "validate_token", AsyncMock(side_effect=AuthError("expired")))
    monkeypatch.setattr(twitch_oauth, "refresh_token", AsyncMock(side_effect=AuthError("revoked")))
    monkeypatch.setattr(twitch_oauth, "exchange_code", AsyncMock(return_value=CALLBACK_AUTH))
    orchestrator = make_orchestrator(twitch_oauth="stored-access", twitch_oauth_refresh="stored-refresh")

    cycle = asyncio.create_task(orchestrator.run_cycle())
    await _eventually(lambda: orchestrator.lifecycle.status is LifecycleStatus.RUNNING)
    await asyncio.sleep(0.05)
    assert _FakeListener.instances == []

    outcome = await orchestrator.receiver.on_primary_callback({"code": "abc"})
    listener = await _started_listener()

    assert outcome is CallbackOutcome.RECEIVED
    assert listener.auth == CALLBACK_AUTH
    await orchestrator.request_restart()
    await cycle


# ---------------------------------------------------------------------------
# The listener starts only once the set is complete
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_dual_provider_waits_for_both(
    make_orchestrator: Callable[..., Orchestrator],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """With Spotify enabled, the listener starts after both callbacks."""
    import spotify_client_impl.oauth as spotify_oauth

    monkeypatch.setattr(twitch_oauth, "exchange_code", AsyncMock(return_value=CALLBACK_AUTH))
    spotify_auth = AuthResult(access_token="spotify-access", refresh_token="spotify-refresh")
    monkeypatch.setattr(spotify_oauth, "exchange_code", AsyncMock(return_value=spotify_auth))
    orchestrator = make_orchestrator(spotify_enabled=True, spotify_client_id="sid", spotify_client_secret="ss")

    cycle = asyncio.create_task(orchestrator.run_cycle())
    await _eventually(lambda: orchestrator.lifecycle.status is LifecycleStatus.RUNNING)

    await orchestrator.receiver.on_primary_callback({"code": "t"})
    await asyncio.sleep(0.05)
    assert _FakeListener.instances == []

    await orchestrator.receiver.on_secondary_callback({"code": "s"})
    listener = await _started_listener()

    assert [client.name for client in listener.music_clients] == ["spotify"]
    assert len(_FakeListener.instances) == 1
    assert (await orchestrator.get_config()).spotify_oauth == "spotify-access"
    await orchestrator.request_restart()
    await cycle


@pytest.mark.asyncio
async def test_repeat_callback_does_not_start_second_listener(
    make_orchestrator: Callable[..., Orchestrator],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A late duplicate callback is answered idempotently."""
    exchange = AsyncMock(return_value=CALLBACK_AUTH)
    monkeypatch.setattr(twitch_oauth, "exchange_code", exchange)
    orchestrator = make_orchestrator()

    cycle = asyncio.create_task(orchestrator.run_cycle())
    await _eventually(lambda: orchestrator.lifecycle.status is LifecycleStatus.RUNNING)
    await orchestrator.receiver.on_primary_callback({"code": "abc"})
    await _started_listener()

    outcome = await orchestrator.receiver.on_primary_callback({"code": "abc"})

    assert outcome is CallbackOutcome.ALREADY_AUTHENTICATED
    assert exchange.await_count == 1
    assert len(_FakeListener.instances) == 1
    await orchestrator.request_restart()
    await cycle


@pytest.mark.asyncio
async def test_music_clients_in_provider_order(
    make_orchestrator: Callable[..., Orchestrator],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Stored Spotify tokens are reused and SoundCloud follows Spotify."""
    monkeypatch.setattr(twitch_oauth, "validate_token", AsyncMock(return_value=None))
    orchestrator = make_orchestrator(
        twitch_oauth="stored-access",
        twitch_oauth_refresh="stored-refresh",
        spotify_enabled=True,
        spotify_client_id="sid",
        spotify_client_secret="ss",
        spotify_oauth="spotify-access",
        spotify_oauth_refresh="spotify-refresh",
        soundcloud_enabled=True,
        soundcloud_oauth="OAuth sc",
    )

    cycle = asyncio.create_task(orchestrator.run_cycle())
    listener = await _started_listener()

    assert [client.name for client in listener.music_clients] == ["spotify", "soundcloud"]
    await orchestrator.request_restart()
    await cycle


# ---------------------------------------------------------------------------
# The restart protocol
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_restart_while_stopped_is_ignored(make_orchestrator: Callable[..., Orchestrator]) -> None:
    """Between cycles a restart request has no effect."""
    orchestrator = make_orchestrator()

    assert await orchestrator.request_restart() is False
    assert orchestrator.lifecycle.status is LifecycleStatus.STOPPED


@pytest.mark.asyncio
async def test_restart_while_listening_resets_state(
    make_orchestrator: Callable[..., Orchestrator],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A restart cancels the listener and installs a fresh gate and store."""
    monkeypatch.setattr(twitch_oauth, "validate_token", AsyncMock(return_value=None))
    orchestrator = make_orchestrator(twitch_oauth="stored-access", twitch_oauth_refresh="stored-refresh")
    old_store = orchestrator.store

    cycle = asyncio.create_task(orchestrator.run_cycle())
    listener = await _started_listener()
    await orchestrator.request_restart()

    assert await asyncio.wait_for(cycle, timeout=2) is CycleOutcome.RESTARTED
    assert listener.cancelled
    assert orchestrator.lifecycle.status is LifecycleStatus.STOPPED
    assert orchestrator.store is not old_store
    assert orchestrator.gate.generation == 1
    assert not await orchestrator.store.is_delivered()


@pytest.mark.asyncio
async def test_restart_mid_wait_abandons_old_store(
    make_orchestrator: Callable[..., Orchestrator],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Restarting during the credential wait leaves the old store inert."""
    exchange = AsyncMock(return_value=CALLBACK_AUTH)
    monkeypatch.setattr(twitch_oauth, "exchange_code", exchange)
    orchestrator = make_orchestrator()

    cycle = asyncio.create_task(orchestrator.run_cycle())
    await _eventually(lambda: orchestrator.lifecycle.status is LifecycleStatus.RUNNING)
    old_store = orchestrator.store
    old_receiver = orchestrator.receiver

    await orchestrator.request_restart()
    assert await asyncio.wait_for(cycle, timeout=2) is CycleOutcome.RESTARTED

    await old_store.record_primary(CALLBACK_AUTH)
    assert orchestrator.store is not old_store
    assert not await orchestrator.store.is_delivered()
    assert not orchestrator.gate.is_fired()
    assert await old_receiver.on_primary_callback({"code": "late"}) is CallbackOutcome.ALREADY_AUTHENTICATED
    assert _FakeListener.instances == []


@pytest.mark.asyncio
async def test_restart_then_next_cycle_runs_again(
    make_orchestrator: Callable[..., Orchestrator],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """After a restart the next cycle reaches RUNNING and starts a new listener."""
    monkeypatch.setattr(twitch_oauth, "validate_token", AsyncMock(return_value=None))
    orchestrator = make_orchestrator(twitch_oauth="stored-access", twitch_oauth_refresh="stored-refresh")
    runner = asyncio.create_task(orchestrator.run(cycles=2))

    first = await _started_listener()
    await orchestrator.request_restart()
    await _eventually(lambda: len(_FakeListener.instances) == 2)
    second = await _started_listener()

    assert first is not second
    assert orchestrator.lifecycle.status is LifecycleStatus.RUNNING
    await orchestrator.request_restart()
    await asyncio.wait_for(runner, timeout=2)
    assert orchestrator.lifecycle.status is LifecycleStatus.STOPPED


# ---------------------------------------------------------------------------
# Unexpected listener exits start a new cycle that revalidates tokens
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [TransportError("connection reset"), RuntimeError("bug")])
async def test_exit_revalidates_each_cycle(
    make_orchestrator: Callable[..., Orchestrator],
    monkeypatch: pytest.MonkeyPatch,
    error: Exception,
) -> None:
    """Each cycle validates the stored token again before listening."""
    validate = AsyncMock(return_value=None)
    monkeypatch.setattr(twitch_oauth, "validate_token", validate)
    _FakeListener.error = error
    orchestrator = make_orchestrator(twitch_oauth="stored-access", twitch_oauth_refresh="stored-refresh")

    await asyncio.wait_for(orchestrator.run(cycles=2), timeout=2)

    assert validate.await_count == 2
    assert len(_FakeListener.instances) == 2
    assert orchestrator.lifecycle.status is LifecycleStatus.STOPPED
    assert orchestrator.gate.generation == 2


@pytest.mark.asyncio
async def test_clean_exit_reports_listener_exited(
    make_orchestrator: Callable[..., Orchestrator],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A listener that returns normally ends the cycle without a restart."""
    monkeypatch.setattr(twitch_oauth, "validate_token", AsyncMock(return_value=None))
    orchestrator = make_orchestrator(twitch_oauth="stored-access", twitch_oauth_refresh="stored-refresh")

    cycle = asyncio.create_task(orchestrator.run_cycle())
    listener = await _started_listener()
    listener.release.set()

    assert await asyncio.wait_for(cycle, timeout=2) is CycleOutcome.LISTENER_EXITED


@pytest.mark.asyncio
async def test_port_in_use_ends_cycle_and_next_cycle_runs(tmp_path: Path) -> None:
    """A callback port that is already taken ends the cycle; the process keeps going."""
    config = Config.model_validate(
        {"twitch_client_id": "cid", "twitch_client_secret": "secret", "twitch_username": "streamer"},
    )
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        port = blocker.getsockname()[1]
        orchestrator = Orchestrator(config, config_path=tmp_path / "config.json", port=port, retry_delay_seconds=0)

        assert await asyncio.wait_for(orchestrator.run_cycle(), timeout=5) is CycleOutcome.LISTENER_EXITED
        await asyncio.wait_for(orchestrator.run(cycles=1), timeout=5)

    assert orchestrator.lifecycle.status is LifecycleStatus.STOPPED
    assert orchestrator._server is None
    assert _FakeListener.instances == []


def test_spotify_store_and_receiver_agree(make_orchestrator: Callable[..., Orchestrator]) -> None:
    """With Spotify enabled the store waits for it and the receiver can deliver it."""
    orchestrator = make_orchestrator(spotify_enabled=True, spotify_client_id="sid", spotify_client_secret="ss")

    assert orchestrator.store.secondary_enabled is True
    assert orchestrator.receiver.secondary_enabled is True
    assert orchestrator.receiver.secondary_auth_url is not None


def test_main_reports_config_error(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """The entry point exits with 1 when no usable config exists."""
    for name in ("TWITCH_CLIENT_ID", "TWITCH_CLIENT_SECRET", "TWITCH_USERNAME", "CONFIG_FILE"):
        monkeypatch.delenv(name, raising=False)

    assert app_module.main(["--config", str(tmp_path / "missing.json")]) == 1


def test_main_runs_orchestrator(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """The entry point builds an orchestrator from the CLI options and runs it."""
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps({"twitch_client_id": "cid", "twitch_client_secret": "secret", "twitch_username": "streamer"}),
        encoding="utf-8",
    )
    seen: dict[str, Orchestrator] = {}

    async def fake_serve(orchestrator: Orchestrator) -> None:
        seen["orchestrator"] = orchestrator

    monkeypatch.setattr(app_module, "_serve", fake_serve)

    assert app_module.main(["--config", str(config_path), "--port", "4000"]) == 0
    assert seen["orchestrator"].receiver.primary_auth_url.endswith(
        "redirect_uri=http%3A%2F%2Flocalhost%3A4000%2Fcallback&response_type=code&scope=chat%3Aread+chat%3Aedit"
    )


def test_main_web_dashboard_and_internal_port(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """--internal-port sets the server port and --web-dashboard announces the admin routes."""
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps({"twitch_client_id": "cid", "twitch_client_secret": "secret", "twitch_username": "streamer"}),
        encoding="utf-8",
    )
    monkeypatch.setattr(app_module, "_serve", AsyncMock())

    with caplog.at_level(logging.INFO, logger="orchestrator"):
        code = app_module.main(["--config", str(config_path), "--internal-port", "4100", "--web-dashboard"])

    assert code == 0
    assert "Web dashboard enabled" in caplog.text
    assert "http://127.0.0.1:4100" in caplog.text
