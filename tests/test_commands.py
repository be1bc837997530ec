from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Mapping, Sequence

from starboard_relay.commands import APPLICATION_COMMANDS, CommandController, parse_command
from starboard_relay.config_store import ConfigStore
from starboard_relay.engine import resolve_destination


class DummyAPI:
    def __init__(self) -> None:
        self.replies: list[tuple[str, bool]] = []
        self.registered: list[tuple[str, list[Mapping[str, Any]]]] = []
        self.guild_names: dict[str, str] = {"1": "Guild"}

    async def respond_to_interaction(
        self,
        interaction_id: str,
        interaction_token: str,
        content: str,
        *,
        ephemeral: bool = False,
    ) -> None:
        self.replies.append((content, ephemeral))

    async def register_commands(
        self, application_id: str, commands: Sequence[Mapping[str, Any]]
    ) -> bool:
        self.registered.append((application_id, list(commands)))
        return True

    async def fetch_guild_name(self, guild_id: str) -> str | None:
        return self.guild_names.get(guild_id)


def _interaction(name: str, *path: str, guild_id: str | None = "1", **values: Any) -> dict[str, Any]:
    options: list[dict[str, Any]] = [
        {"name": key, "type": 7 if key == "channel" else 4, "value": value}
        for key, value in values.items()
    ]
    for depth, part in enumerate(reversed(path)):
        option_type = 1 if depth == 0 else 2
        options = [{"name": part, "type": option_type, "options": options}]
    payload: dict[str, Any] = {
        "id": "900",
        "token": "interaction-token",
        "type": 2,
        "channel_id": "100",
        "member": {"user": {"id": "42", "username": "admin"}},
        "data": {"name": name, "options": options},
    }
    if guild_id is not None:
        payload["guild_id"] = guild_id
    return payload


def _run(controller: CommandController, *interactions: Mapping[str, Any]) -> None:
    async def runner() -> None:
        for interaction in interactions:
            await controller.handle_interaction(interaction)

    asyncio.run(runner())


def test_parse_command_flattens_subcommands() -> None:
    ctx = parse_command(_interaction("starboard", "whitelist", "add", channel="123"))

    assert ctx is not None
    assert ctx.command == "starboard"
    assert ctx.path == ("whitelist", "add")
    assert ctx.options == {"channel": "123"}
    assert ctx.guild_id == "1"
    assert ctx.user_id == "42"


def test_whitelist_add_then_list(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "db.sqlite")
    api = DummyAPI()
    controller = CommandController(api, store)

    _run(
        controller,
        _interaction("starboard", "whitelist", "add", channel="123"),
        _interaction("starboard", "whitelist", "add", channel="123"),
        _interaction("starboard", "whitelist", "list"),
    )

    assert "<#123> is now tracked" in api.replies[0][0]
    assert "already tracked" in api.replies[1][0]
    assert "<#123>" in api.replies[2][0]
    assert all(ephemeral for _, ephemeral in api.replies)
    settings = store.find_by_community("1")
    assert settings is not None
    assert settings.guild_name == "Guild"


def test_whitelist_remove_missing_channel_is_noop(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "db.sqlite")
    api = DummyAPI()
    controller = CommandController(api, store)

    _run(
        controller,
        _interaction("starboard", "whitelist", "add", channel="123"),
        _interaction("starboard", "whitelist", "remove", channel="456"),
        _interaction("starboard", "whitelist", "list"),
    )

    assert "was not tracked" in api.replies[1][0]
    assert "<#123>" in api.replies[2][0]
    assert store.list_whitelist("1") == ["123"]


def test_list_without_settings_explains_missing_config(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "db.sqlite")
    api = DummyAPI()
    controller = CommandController(api, store)

    _run(controller, _interaction("starboard", "whitelist", "list"))

    assert len(api.replies) == 1
    assert "no starboard configuration" in api.replies[0][0]


def test_set_starboard_channel_and_levels(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "db.sqlite")
    api = DummyAPI()
    controller = CommandController(api, store)

    _run(
        controller,
        _interaction("starboard", "whitelist", "set", channel="200"),
        _interaction("starboard", "repost", level=1, count=3),
        _interaction("starboard", "repost", level=1, count=4),
        _interaction("starboard", "repost", level=5, count=4),
    )

    settings = store.find_by_community("1")
    assert settings is not None
    assert settings.starboard_channel_ids == ["200"]
    assert [(item.level, item.min_reactions) for item in settings.star_levels] == [(1, 4)]
    assert "<#200>" in api.replies[0][0]
    assert "exactly 4 reactions" in api.replies[2][0]
    assert "between 1 and 3" in api.replies[3][0]


def test_setting_the_starboard_channel_again_moves_reposts(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "db.sqlite")
    api = DummyAPI()
    controller = CommandController(api, store)

    _run(
        controller,
        _interaction("starboard", "whitelist", "set", channel="201"),
        _interaction("starboard", "whitelist", "set", channel="202"),
    )

    settings = store.find_by_community("1")
    assert settings is not None
    assert resolve_destination(settings) == "202"
    assert settings.starboard_channel_ids == ["202"]
    assert api.replies[1][0] == "⭐ Reposts will be sent to <#202>."


def test_ping_reports_latency(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "db.sqlite")
    api = DummyAPI()
    latencies: list[float | None] = [None, 0.1234]
    controller = CommandController(api, store, latency=lambda: latencies.pop(0))

    _run(controller, _interaction("ping"), _interaction("ping"))

    assert api.replies[0] == ("🏓 Pong! Latency: unknown", False)
    assert api.replies[1] == ("🏓 Pong! Latency: 123ms", False)


def test_commands_outside_guild_and_unknown_commands(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "db.sqlite")
    api = DummyAPI()
    controller = CommandController(api, store)

    _run(
        controller,
        _interaction("starboard", "whitelist", "list", guild_id=None),
        _interaction("unknown"),
        {"type": 3, "id": "1", "token": "t", "data": {"name": "ping"}},
    )

    assert len(api.replies) == 2
    assert "inside a server" in api.replies[0][0]
    assert "Unknown command" in api.replies[1][0]


def test_database_errors_produce_generic_reply(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "db.sqlite")
    store.close()
    api = DummyAPI()
    controller = CommandController(api, store)

    _run(controller, _interaction("starboard", "whitelist", "add", channel="123"))

    assert len(api.replies) == 1
    assert "Database error" in api.replies[0][0]


def test_register_only_once_per_application(tmp_path: Path) -> None:
    store = ConfigStore(tmp_path / "db.sqlite")
    api = DummyAPI()
    controller = CommandController(api, store)

    async def runner() -> None:
        assert await controller.register("77") is True
        assert await controller.register("77") is True

    asyncio.run(runner())

    assert len(api.registered) == 1
    names = [command["name"] for command in api.registered[0][1]]
    assert names == [command["name"] for command in APPLICATION_COMMANDS]
