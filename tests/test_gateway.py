from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Mapping, cast

import aiohttp
import pytest
from aiohttp import test_utils, web

from starboard_relay.gateway import (
    OP_DISPATCH,
    OP_HEARTBEAT,
    OP_HEARTBEAT_ACK,
    OP_HELLO,
    OP_IDENTIFY,
    OP_INVALID_SESSION,
    OP_RESUME,
    DiscordGateway,
    GatewayFatalError,
    parse_reaction_event,
)
from starboard_relay.models import ReactionEvent


class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    async def close(self) -> None:
        self.closed = True


def _gateway(
    reactions: list[ReactionEvent], interactions: list[Mapping[str, Any]]
) -> DiscordGateway:
    async def on_reaction(event: ReactionEvent) -> None:
        reactions.append(event)

    async def on_interaction(payload: Mapping[str, Any]) -> None:
        interactions.append(payload)

    return DiscordGateway(
        cast(aiohttp.ClientSession, object()),
        "Bot secret-token",
        on_reaction=on_reaction,
        on_interaction=on_interaction,
    )


def test_hello_identifies_and_dispatches_events() -> None:
    reactions: list[ReactionEvent] = []
    interactions: list[Mapping[str, Any]] = []
    gateway = _gateway(reactions, interactions)
    ws = FakeWebSocket()

    async def runner() -> None:
        gateway._ws = ws  # type: ignore[assignment]
        await gateway.handle_payload({"op": OP_HELLO, "d": {"heartbeat_interval": 60000}})
        await gateway.handle_payload(
            {
                "op": OP_DISPATCH,
                "s": 1,
                "t": "READY",
                "d": {
                    "session_id": "abc",
                    "resume_gateway_url": "wss://resume.example",
                    "user": {"id": "10", "username": "bot"},
                    "application": {"id": "20"},
                },
            }
        )
        await gateway.handle_payload(
            {
                "op": OP_DISPATCH,
                "s": 2,
                "t": "MESSAGE_REACTION_ADD",
                "d": {
                    "guild_id": "1",
                    "channel_id": "100",
                    "message_id": "555",
                    "user_id": "42",
                    "emoji": {"name": "⭐"},
                },
            }
        )
        await gateway.handle_payload(
            {"op": OP_DISPATCH, "s": 3, "t": "INTERACTION_CREATE", "d": {"id": "900"}}
        )
        await gateway.handle_payload({"op": OP_HEARTBEAT})
        await gateway.handle_payload({"op": OP_HEARTBEAT_ACK})
        await gateway.stop()

    asyncio.run(runner())

    identify = ws.sent[0]
    assert identify["op"] == OP_IDENTIFY
    assert identify["d"]["token"] == "secret-token"
    assert identify["d"]["intents"] == (1 << 0) | (1 << 10)
    assert ws.sent[1] == {"op": OP_HEARTBEAT, "d": 3}
    assert gateway.application_id == "20"
    assert gateway.user_id == "10"
    assert reactions == [
        ReactionEvent(guild_id="1", channel_id="100", message_id="555", user_id="42", emoji="⭐")
    ]
    assert interactions == [{"id": "900"}]
    assert gateway.latency is not None and gateway.latency >= 0
    assert ws.closed is True


def test_resume_after_reconnect_and_reset_on_invalid_session() -> None:
    gateway = _gateway([], [])

    async def runner() -> tuple[FakeWebSocket, FakeWebSocket]:
        first = FakeWebSocket()
        gateway._ws = first  # type: ignore[assignment]
        await gateway.handle_payload(
            {"op": OP_DISPATCH, "s": 7, "t": "READY", "d": {"session_id": "abc", "user": {"id": "10"}}}
        )
        await gateway.handle_payload({"op": OP_HELLO, "d": {"heartbeat_interval": 60000}})

        await gateway.handle_payload({"op": OP_INVALID_SESSION, "d": False})
        second = FakeWebSocket()
        gateway._ws = second  # type: ignore[assignment]
        await gateway.handle_payload({"op": OP_HELLO, "d": {"heartbeat_interval": 60000}})
        await gateway.stop()
        return first, second

    first, second = asyncio.run(runner())

    assert first.sent[0]["op"] == OP_RESUME
    assert first.sent[0]["d"] == {"token": "secret-token", "session_id": "abc", "seq": 7}
    assert first.closed is True
    assert second.sent[0]["op"] == OP_IDENTIFY
    assert gateway.application_id == "10"


def test_reactions_outside_guilds_are_dropped() -> None:
    assert parse_reaction_event({"channel_id": "1", "message_id": "2"}) is None
    assert parse_reaction_event({"guild_id": "x", "channel_id": "1", "message_id": "2"}) is None

    event = parse_reaction_event({"guild_id": "3", "channel_id": "1", "message_id": "2"})
    assert event == ReactionEvent(guild_id="3", channel_id="1", message_id="2")


def _closing_server(close_code: int, connections: list[int]) -> test_utils.TestServer:
    async def handler(request: web.Request) -> web.WebSocketResponse:
        connections.append(len(connections))
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.close(code=close_code)
        return ws

    app = web.Application()
    app.router.add_get("/gateway", handler)
    return test_utils.TestServer(app)


def test_server_close_backs_off_before_reconnecting() -> None:
    connections: list[int] = []

    async def runner() -> None:
        server = _closing_server(4000, connections)
        await server.start_server()
        try:
            async with aiohttp.ClientSession() as session:

                async def on_reaction(event: ReactionEvent) -> None:
                    return None

                gateway = DiscordGateway(
                    session,
                    "token",
                    on_reaction=on_reaction,
                    url=str(server.make_url("/gateway")),
                )
                task = asyncio.create_task(gateway.run())
                await asyncio.sleep(0.5)
                await gateway.stop()
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        finally:
            await server.close()

    asyncio.run(runner())

    assert len(connections) == 1


def test_fatal_close_code_stops_reconnecting() -> None:
    connections: list[int] = []

    async def runner() -> None:
        server = _closing_server(4004, connections)
        await server.start_server()
        try:
            async with aiohttp.ClientSession() as session:

                async def on_reaction(event: ReactionEvent) -> None:
                    return None

                gateway = DiscordGateway(
                    session,
                    "token",
                    on_reaction=on_reaction,
                    url=str(server.make_url("/gateway")),
                )
                with pytest.raises(GatewayFatalError) as excinfo:
                    await asyncio.wait_for(gateway.run(), timeout=5)
                assert excinfo.value.close_code == 4004
        finally:
            await server.close()

    asyncio.run(runner())

    assert len(connections) == 1
