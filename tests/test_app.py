from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Mapping

import pytest

from starboard_relay.app import StarboardApp
from starboard_relay.gateway import GatewayFatalError
from starboard_relay.models import DeliveryEndpoint, ReactionEvent, RepostOutcome


class DummyEngine:
    def __init__(self) -> None:
        self.events: list[ReactionEvent] = []

    async def handle_reaction(self, event: ReactionEvent) -> RepostOutcome:
        self.events.append(event)
        if event.message_id == "boom":
            raise RuntimeError("engine exploded")
        return RepostOutcome(status="ignored", reason="no_config")


class DummyController:
    def __init__(self) -> None:
        self.interactions: list[Mapping[str, Any]] = []

    async def handle_interaction(self, interaction: Mapping[str, Any]) -> None:
        self.interactions.append(interaction)


def _app(tmp_path: Path) -> StarboardApp:
    return StarboardApp(
        db_path=tmp_path / "db.sqlite",
        token="secret",
        endpoints=[DeliveryEndpoint(id="1", token="a")],
    )


def test_events_are_handled_in_background_tasks(tmp_path: Path) -> None:
    app = _app(tmp_path)
    engine = DummyEngine()
    controller = DummyController()
    app._engine = engine  # type: ignore[assignment]
    app._controller = controller  # type: ignore[assignment]

    async def runner() -> None:
        await app._on_reaction(ReactionEvent(guild_id="1", channel_id="2", message_id="3"))
        await app._on_reaction(ReactionEvent(guild_id="1", channel_id="2", message_id="boom"))
        await app._on_interaction({"id": "900", "type": 2})
        assert len(app._tasks) == 3
        await asyncio.gather(*list(app._tasks), return_exceptions=True)
        await asyncio.sleep(0)

    asyncio.run(runner())

    assert [event.message_id for event in engine.events] == ["3", "boom"]
    assert controller.interactions == [{"id": "900", "type": 2}]
    assert app._tasks == set()
    app._store.close()


def test_supervise_restarts_failed_tasks(tmp_path: Path) -> None:
    app = _app(tmp_path)
    calls: list[int] = []

    async def factory() -> None:
        calls.append(len(calls))
        if len(calls) >= 3:
            raise asyncio.CancelledError
        raise RuntimeError("gateway down")

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(app._supervise("gateway", factory, retry_delay=0))

    assert len(calls) == 3
    app._store.close()


def test_supervise_gives_up_on_fatal_errors(tmp_path: Path) -> None:
    app = _app(tmp_path)
    calls: list[int] = []

    async def factory() -> None:
        calls.append(len(calls))
        raise GatewayFatalError(4004)

    with pytest.raises(GatewayFatalError):
        asyncio.run(
            app._supervise("gateway", factory, retry_delay=0, fatal=(GatewayFatalError,))
        )

    assert calls == [0]
    app._store.close()
