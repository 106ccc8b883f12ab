"""Twitch chat listener that answers now-playing commands."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from typing import TYPE_CHECKING

from music_client_api import track_url
from orchestrator.errors import AuthError, NowPlayingError, RestartSignal, TransportError
from orchestrator.lifecycle import LifecycleStatus
from orchestrator.models import AuthResult
from twitchAPI.chat import Chat, ChatMessage, EventData
from twitchAPI.twitch import Twitch
from twitchAPI.type import (
    AuthScope,
    ChatEvent,
    InvalidTokenException,
    TwitchAPIException,
    UnauthorizedException,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from music_client_api import Client
    from orchestrator.lifecycle import LifecycleState

__all__ = ["NOW_PLAYING_COMMANDS", "TwitchListener"]

logger = logging.getLogger("twitch_listener")

NOW_PLAYING_COMMANDS = frozenset({"!np", "!song"})
USER_SCOPE = [AuthScope.CHAT_READ, AuthScope.CHAT_EDIT]
CHAT_STARTUP_TIMEOUT_SECONDS = 30.0
CHAT_STOP_TIMEOUT_SECONDS = 10.0


class TwitchListener:
    """Joins the configured channel and replies to ``!np`` / ``!song``.

    Attributes:
        _username: Channel to join, also the bot account.
        _auth: Chat tokens for the bot account.
        _music_clients: Providers queried in order for the current track.
        _lifecycle: Shared status consulted for every received message.
        _on_token_refresh: Optional coroutine invoked when twitchAPI refreshes tokens.
        _startup_timeout_seconds: Longest wait for the chat client to connect.

    """

    def __init__(  # noqa: PLR0913
        self,
        client_id: str,
        client_secret: str,
        username: str,
        auth: AuthResult,
        music_clients: Sequence[Client],
        lifecycle: LifecycleState,
        *,
        on_token_refresh: Callable[[AuthResult], Awaitable[None]] | None = None,
        startup_timeout_seconds: float = CHAT_STARTUP_TIMEOUT_SECONDS,
        stop_timeout_seconds: float = CHAT_STOP_TIMEOUT_SECONDS,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._username = username
        self._auth = auth
        self._music_clients = list(music_clients)
        self._lifecycle = lifecycle
        self._on_token_refresh = on_token_refresh
        self._startup_timeout_seconds = startup_timeout_seconds
        self._stop_timeout_seconds = stop_timeout_seconds
        self._queue: asyncio.Queue[ChatMessage] = asyncio.Queue()
        self._twitch: Twitch | None = None
        self._chat: Chat | None = None

    @property
    def music_clients(self) -> list[Client]:
        return list(self._music_clients)

    # -----------------------------------------------------------------------
    # Run loop
    # -----------------------------------------------------------------------

    async def run(self) -> None:
        """Receive chat messages until the lifecycle stops or restarts.

        Returns:
            None when the lifecycle reads STOPPED for a received message.

        Raises:
            RestartSignal: A restart was requested while listening.
            AuthError: Twitch rejected the chat credentials.
            TransportError: The chat connection could not be set up.

        """
        if not self._music_clients:
            logger.warning("Neither Spotify nor SoundCloud is enabled; !np will never find a song.")
        await self._connect_chat(asyncio.get_running_loop())
        try:
            while True:
                message = await self._next_message()
                status = self._lifecycle.status
                if status is LifecycleStatus.STOPPED:
                    logger.info("Lifecycle stopped; leaving chat")
                    return
                if status is LifecycleStatus.RESTARTING:
                    raise RestartSignal
                await self.handle_message(message)
        finally:
            await self._disconnect_chat()

    async def handle_message(self, message: ChatMessage) -> None:
        """Dispatch one chat message."""
        if (message.text or "").strip() in NOW_PLAYING_COMMANDS:
            await self.now_playing(message)

    async def now_playing(self, message: ChatMessage) -> str | None:
        """Reply with the first track any provider reports.

        Returns:
            The reply text, or None when no provider had a track.

        """
        for client in self._music_clients:
            try:
                track = await client.fetch_current_track()
            except NowPlayingError as exc:
                logger.warning("Failed to read now playing from %s. %s", client.name, exc)
                continue
            if track is None:
                continue
            reply = f"Now playing: {track_url(track)}"
            try:
                await message.reply(reply)
            except TwitchAPIException:
                logger.exception("Failed to send reply to chat")
            return reply
        logger.info("No song found playing.")
        return None

    async def _next_message(self) -> ChatMessage:
        """Wait for the next chat message, raising RestartSignal if a restart arrives first."""
        get_task = asyncio.ensure_future(self._queue.get())
        interrupt_task = asyncio.ensure_future(self._lifecycle.wait_for_interrupt())
        try:
            await asyncio.wait({get_task, interrupt_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            interrupt_task.cancel()
            if not get_task.done():
                get_task.cancel()
        if get_task.done() and not get_task.cancelled():
            return get_task.result()
        raise RestartSignal

    # -----------------------------------------------------------------------
    # twitchAPI plumbing
    # -----------------------------------------------------------------------

    async def _connect_chat(self, loop: asyncio.AbstractEventLoop) -> None:
        """Authenticate with Twitch and start the chat client thread."""
        try:
            self._twitch = await Twitch(self._client_id, self._client_secret)
            await self._twitch.set_user_authentication(
                self._auth.access_token,
                USER_SCOPE,
                self._auth.refresh_token,
            )
            self._twitch.user_auth_refresh_callback = self._on_user_auth_refresh
            chat = await Chat(self._twitch)
        except (InvalidTokenException, UnauthorizedException) as exc:
            await self._disconnect_chat()
            msg = f"Twitch rejected the chat credentials. {exc}"
            raise AuthError(msg) from exc
        except TwitchAPIException as exc:
            await self._disconnect_chat()
            msg = f"Unable to connect to Twitch chat. {exc}"
            raise TransportError(msg) from exc

        async def on_ready(ready_event: EventData) -> None:
            logger.info("Connected to Twitch chat, joining #%s", self._username)
            await ready_event.chat.join_room(self._username)

        async def on_message(message: ChatMessage) -> None:
            # Chat callbacks run on the twitchAPI thread; hand off to our loop.
            loop.call_soon_threadsafe(self._queue.put_nowait, message)

        chat.register_event(ChatEvent.READY, on_ready)
        chat.register_event(ChatEvent.MESSAGE, on_message)
        try:
            await self._start_chat(chat)
        except BaseException:
            await self._disconnect_chat()
            raise
        self._chat = chat

    async def _start_chat(self, chat: Chat) -> None:
        """Run the blocking ``Chat.start`` off the event loop, giving up after the startup timeout.

        A chat that finishes starting after it was given up on is stopped by its own thread.
        """
        lock = threading.Lock()
        started = False
        abandoned = False

        def start() -> None:
            nonlocal started
            chat.start()
            with lock:
                started = True
                stop_now = abandoned
            if stop_now:
                logger.info("Twitch chat connected after it was abandoned; stopping it")
                chat.stop()

        try:
            await _call_in_daemon_thread(start, timeout=self._startup_timeout_seconds, name="twitch-chat-start")
        except (TimeoutError, asyncio.CancelledError) as exc:
            with lock:
                abandoned = True
                stop_here = started
            if stop_here:
                await self._stop_chat(chat)
            if isinstance(exc, asyncio.CancelledError):
                raise
            msg = f"Twitch chat did not connect within {self._startup_timeout_seconds:.0f} seconds"
            raise TransportError(msg) from exc
        except UnauthorizedException as exc:
            msg = f"Twitch rejected the chat credentials. {exc}"
            raise AuthError(msg) from exc
        except (TwitchAPIException, RuntimeError) as exc:
            msg = f"Unable to start Twitch chat. {exc}"
            raise TransportError(msg) from exc

    async def _disconnect_chat(self) -> None:
        chat, self._chat = self._chat, None
        twitch, self._twitch = self._twitch, None
        if chat is not None:
            await self._stop_chat(chat)
        if twitch is not None:
            await twitch.close()

    async def _stop_chat(self, chat: Chat) -> None:
        try:
            await _call_in_daemon_thread(chat.stop, timeout=self._stop_timeout_seconds, name="twitch-chat-stop")
        except RuntimeError:
            logger.debug("Chat client was not running")
        except TimeoutError:
            logger.warning("Twitch chat did not stop within %.0f seconds", self._stop_timeout_seconds)

    async def _on_user_auth_refresh(self, access_token: str, refresh_token: str) -> None:
        self._auth = AuthResult(access_token=access_token, refresh_token=refresh_token)
        logger.info("Twitch chat tokens refreshed")
        if self._on_token_refresh is not None:
            await self._on_token_refresh(self._auth)


async def _call_in_daemon_thread(func: Callable[[], None], *, timeout: float, name: str) -> None:
    """Run ``func`` on a daemon thread and wait for it without blocking the event loop.

    The thread is a daemon; a call that never returns is left behind on timeout.

    Raises:
        TimeoutError: ``func`` did not return within ``timeout`` seconds.

    """
    loop = asyncio.get_running_loop()
    done: asyncio.Future[None] = loop.create_future()

    def settle(error: BaseException | None) -> None:
        if done.done():
            return
        if error is None:
            done.set_result(None)
        else:
            done.set_exception(error)

    def target() -> None:
        error: BaseException | None = None
        try:
            func()
        except Exception as exc:  # noqa: BLE001
            error = exc
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(settle, error)

    threading.Thread(target=target, name=name, daemon=True).start()
    await asyncio.wait_for(done, timeout)
