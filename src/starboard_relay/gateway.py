"""Discord gateway session delivering reaction and interaction events."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from typing import Any, Awaitable, Callable, Mapping

import aiohttp

from .models import ReactionEvent
from .utils import parse_snowflake

GATEWAY_URL = "wss://gateway.discord.gg/?v=10&encoding=json"

OP_DISPATCH = 0
OP_HEARTBEAT = 1
OP_IDENTIFY = 2
OP_RESUME = 6
OP_RECONNECT = 7
OP_INVALID_SESSION = 9
OP_HELLO = 10
OP_HEARTBEAT_ACK = 11

# Close codes after which reconnecting cannot succeed.
FATAL_CLOSE_CODES = frozenset({4004, 4010, 4011, 4012, 4013, 4014})

INTENT_GUILDS = 1 << 0
INTENT_GUILD_MESSAGE_REACTIONS = 1 << 10

ReactionHandler = Callable[[ReactionEvent], Awaitable[None]]
InteractionHandler = Callable[[Mapping[str, Any]], Awaitable[None]]
ReadyHandler = Callable[[Mapping[str, Any]], Awaitable[None]]

logger = logging.getLogger(__name__)


class GatewayDisconnected(RuntimeError):
    """The websocket closed while the session was expected to run."""


class GatewayFatalError(RuntimeError):
    """Discord closed the session with a code that rules out reconnecting."""

    def __init__(self, close_code: int):
        super().__init__(f"Gateway closed with fatal code {close_code}")
        self.close_code = close_code


class DiscordGateway:
    """Single websocket connection with heartbeat, identify and resume."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        *,
        on_reaction: ReactionHandler,
        on_interaction: InteractionHandler | None = None,
        on_ready: ReadyHandler | None = None,
        intents: int = INTENT_GUILDS | INTENT_GUILD_MESSAGE_REACTIONS,
        url: str = GATEWAY_URL,
    ):
        self._session = session
        self._token = _raw_token(token)
        self._on_reaction = on_reaction
        self._on_interaction = on_interaction
        self._on_ready = on_ready
        self._intents = intents
        self._url = url
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._sequence: int | None = None
        self._session_id: str | None = None
        self._resume_url: str | None = None
        self._heartbeat_sent_at: float | None = None
        self._latency: float | None = None
        self._consecutive_failures = 0
        self._close_requested = False
        self._running = False
        self.application_id: str | None = None
        self.user_id: str | None = None

    @property
    def latency(self) -> float | None:
        """Round trip of the last heartbeat in seconds."""

        return self._latency

    async def run(self) -> None:
        """Keep a session alive, reconnecting with backoff until stopped."""

        self._running = True
        while self._running:
            try:
                await self.run_session()
                self._consecutive_failures = 0
            except (asyncio.CancelledError, GatewayFatalError):
                self._running = False
                raise
            except Exception:
                self._consecutive_failures += 1
                logger.exception(
                    "Gateway session failed (%d in a row)", self._consecutive_failures
                )
                if not self._running:
                    break
                await asyncio.sleep(self._backoff())

    async def stop(self) -> None:
        self._running = False
        await self._stop_heartbeat()
        await self._close_ws()
        self._ws = None

    async def run_session(self) -> None:
        """Run one websocket session until it closes."""

        url = self._resume_url if self._can_resume() and self._resume_url else self._url
        unclean = False
        close_code: int | None = None
        self._close_requested = False
        try:
            async with self._session.ws_connect(url, heartbeat=None) as ws:
                self._ws = ws
                logger.info("Connected to Discord gateway")
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        await self.handle_payload(json.loads(msg.data))
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        logger.error("Gateway websocket error: %s", ws.exception())
                        unclean = True
                        break
                    elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                        unclean = True
                        break
                close_code = ws.close_code
                if not self._close_requested:
                    unclean = True
        finally:
            self._ws = None
            await self._stop_heartbeat()

        if close_code is not None:
            logger.warning("Gateway closed with code %s", close_code)
        if close_code in FATAL_CLOSE_CODES:
            raise GatewayFatalError(close_code)
        if unclean and self._running:
            raise GatewayDisconnected(f"Gateway disconnected (close_code={close_code})")

    async def handle_payload(self, payload: Mapping[str, Any]) -> None:
        opcode = payload.get("op")

        if opcode == OP_HELLO:
            data = payload.get("d") or {}
            interval_ms = int(data.get("heartbeat_interval") or 41250)
            await self._start_heartbeat(interval_ms)
            await self._identify_or_resume()

        elif opcode == OP_HEARTBEAT_ACK:
            if self._heartbeat_sent_at is not None:
                self._latency = time.perf_counter() - self._heartbeat_sent_at
            logger.debug("Gateway heartbeat acknowledged")

        elif opcode == OP_HEARTBEAT:
            await self._send_heartbeat()

        elif opcode == OP_RECONNECT:
            logger.info("Gateway requested reconnect")
            await self._close_ws()

        elif opcode == OP_INVALID_SESSION:
            resumable = bool(payload.get("d"))
            logger.warning("Gateway invalidated the session (resumable=%s)", resumable)
            if not resumable:
                self._session_id = None
                self._sequence = None
                self._resume_url = None
            await self._close_ws()

        elif opcode == OP_DISPATCH:
            sequence = payload.get("s")
            if sequence is not None:
                self._sequence = int(sequence)
            await self._dispatch(str(payload.get("t") or ""), payload.get("d") or {})

    async def _dispatch(self, event_type: str, data: Mapping[str, Any]) -> None:
        if event_type == "READY":
            self._session_id = data.get("session_id")
            self._resume_url = _with_query(data.get("resume_gateway_url"))
            user = data.get("user") or {}
            application = data.get("application") or {}
            self.user_id = parse_snowflake(user.get("id"))
            self.application_id = parse_snowflake(application.get("id")) or self.user_id
            logger.info("Gateway ready as %s", user.get("username") or self.user_id)
            if self._on_ready is not None:
                await self._on_ready(data)

        elif event_type == "RESUMED":
            logger.info("Gateway session resumed")

        elif event_type == "MESSAGE_REACTION_ADD":
            event = parse_reaction_event(data)
            if event is None:
                logger.debug("Ignoring reaction outside of a guild")
                return
            await self._on_reaction(event)

        elif event_type == "INTERACTION_CREATE":
            if self._on_interaction is not None:
                await self._on_interaction(data)

    async def _identify_or_resume(self) -> None:
        if self._ws is None:
            return
        if self._can_resume():
            await self._ws.send_json(
                {
                    "op": OP_RESUME,
                    "d": {
                        "token": self._token,
                        "session_id": self._session_id,
                        "seq": self._sequence,
                    },
                }
            )
            logger.info("Sent gateway RESUME (seq=%s)", self._sequence)
            return
        await self._ws.send_json(
            {
                "op": OP_IDENTIFY,
                "d": {
                    "token": self._token,
                    "intents": self._intents,
                    "properties": {
                        "os": "linux",
                        "browser": "starboard-relay",
                        "device": "starboard-relay",
                    },
                },
            }
        )
        logger.info("Sent gateway IDENTIFY")

    def _can_resume(self) -> bool:
        return bool(self._session_id) and self._sequence is not None

    async def _start_heartbeat(self, interval_ms: int) -> None:
        await self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(interval_ms / 1000.0), name="gateway-heartbeat"
        )

    async def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _heartbeat_loop(self, interval: float) -> None:
        await asyncio.sleep(random.random() * interval)
        while True:
            await self._send_heartbeat()
            await asyncio.sleep(interval)

    async def _send_heartbeat(self) -> None:
        if self._ws is None or self._ws.closed:
            return
        try:
            self._heartbeat_sent_at = time.perf_counter()
            await self._ws.send_json({"op": OP_HEARTBEAT, "d": self._sequence})
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            logger.warning("Failed to send gateway heartbeat: %s", exc)

    async def _close_ws(self) -> None:
        self._close_requested = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

    def _backoff(self) -> float:
        base = min(1.0 * (2 ** min(self._consecutive_failures, 6)), 60.0)
        return base + base * 0.1 * (2 * random.random() - 1)


def parse_reaction_event(data: Mapping[str, Any]) -> ReactionEvent | None:
    guild_id = parse_snowflake(data.get("guild_id"))
    channel_id = parse_snowflake(data.get("channel_id"))
    message_id = parse_snowflake(data.get("message_id"))
    if guild_id is None or channel_id is None or message_id is None:
        return None
    emoji = data.get("emoji") or {}
    return ReactionEvent(
        guild_id=guild_id,
        channel_id=channel_id,
        message_id=message_id,
        user_id=parse_snowflake(data.get("user_id")),
        emoji=str(emoji.get("name") or "") or None,
    )


def _raw_token(token: str) -> str:
    stripped = token.strip()
    if stripped.lower().startswith("bot "):
        return stripped[4:].strip()
    return stripped


def _with_query(url: object) -> str | None:
    if not url:
        return None
    text = str(url).rstrip("/")
    return f"{text}/?v=10&encoding=json"
