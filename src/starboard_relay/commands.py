"""Slash command controller for starboard configuration."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence

from .config_store import ConfigStore
from .errors import ConfigNotFound
from .formatting import level_title
from .utils import parse_snowflake

logger = logging.getLogger(__name__)

_APPLICATION_COMMAND = 2
_OPTION_SUB_COMMAND = 1
_OPTION_SUB_COMMAND_GROUP = 2
_OPTION_INTEGER = 4
_OPTION_CHANNEL = 7
_TEXT_CHANNEL_TYPES = [0, 5, 15]
_MANAGE_GUILD = str(1 << 5)
_MAX_LEVEL = 3


class InteractionAPI(Protocol):
    async def respond_to_interaction(
        self,
        interaction_id: str,
        interaction_token: str,
        content: str,
        *,
        ephemeral: bool = False,
    ) -> None: ...

    async def register_commands(
        self, application_id: str, commands: Sequence[Mapping[str, Any]]
    ) -> bool: ...

    async def fetch_guild_name(self, guild_id: str) -> str | None: ...


@dataclass(slots=True)
class CommandContext:
    interaction_id: str
    token: str
    guild_id: str | None
    channel_id: str | None
    user_id: str | None
    command: str
    path: tuple[str, ...] = ()
    options: dict[str, Any] = field(default_factory=dict)
    interaction: Mapping[str, Any] = field(default_factory=dict)


def _channel_option(description: str) -> dict[str, Any]:
    return {
        "type": _OPTION_CHANNEL,
        "name": "channel",
        "description": description,
        "required": True,
        "channel_types": _TEXT_CHANNEL_TYPES,
    }


APPLICATION_COMMANDS: tuple[dict[str, Any], ...] = (
    {
        "name": "ping",
        "type": 1,
        "description": "Check that the bot is alive and show gateway latency.",
    },
    {
        "name": "starboard",
        "type": 1,
        "description": "Configure the starboard for this server.",
        "default_member_permissions": _MANAGE_GUILD,
        "dm_permission": False,
        "options": [
            {
                "type": _OPTION_SUB_COMMAND_GROUP,
                "name": "whitelist",
                "description": "Manage tracked channels and the starboard channel.",
                "options": [
                    {
                        "type": _OPTION_SUB_COMMAND,
                        "name": "add",
                        "description": "Track reactions in a channel.",
                        "options": [_channel_option("Channel to track")],
                    },
                    {
                        "type": _OPTION_SUB_COMMAND,
                        "name": "remove",
                        "description": "Stop tracking reactions in a channel.",
                        "options": [_channel_option("Channel to stop tracking")],
                    },
                    {
                        "type": _OPTION_SUB_COMMAND,
                        "name": "set",
                        "description": "Set the channel reposts are sent to.",
                        "options": [_channel_option("Starboard channel")],
                    },
                    {
                        "type": _OPTION_SUB_COMMAND,
                        "name": "list",
                        "description": "Show tracked channels.",
                    },
                ],
            },
            {
                "type": _OPTION_SUB_COMMAND,
                "name": "repost",
                "description": "Set how many reactions a level needs.",
                "options": [
                    {
                        "type": _OPTION_INTEGER,
                        "name": "level",
                        "description": "Star level",
                        "required": True,
                        "min_value": 1,
                        "max_value": _MAX_LEVEL,
                    },
                    {
                        "type": _OPTION_INTEGER,
                        "name": "count",
                        "description": "Exact number of reactions that triggers the repost",
                        "required": True,
                        "min_value": 0,
                    },
                ],
            },
        ],
    },
)


class CommandController:
    """Answer slash commands; every invocation gets exactly one reply."""

    def __init__(
        self,
        api: InteractionAPI,
        store: ConfigStore,
        *,
        latency: Callable[[], float | None] = lambda: None,
    ) -> None:
        self._api = api
        self._store = store
        self._latency = latency
        self._registered_for: str | None = None

    async def register(self, application_id: str) -> bool:
        if self._registered_for == application_id:
            return True
        ok = await self._api.register_commands(application_id, APPLICATION_COMMANDS)
        if ok:
            self._registered_for = application_id
            logger.info("Registered %d application commands", len(APPLICATION_COMMANDS))
        return ok

    async def handle_interaction(self, interaction: Mapping[str, Any]) -> None:
        if interaction.get("type") != _APPLICATION_COMMAND:
            return
        ctx = parse_command(interaction)
        if ctx is None:
            return
        await self._dispatch(ctx)

    async def _dispatch(self, ctx: CommandContext) -> None:
        handler = getattr(self, f"cmd_{ctx.command}", None)
        if handler is None:
            await self._reply(ctx, f"Unknown command `/{ctx.command}`.")
            return
        await self._execute_command(handler, ctx)

    async def _execute_command(
        self,
        handler: Callable[[CommandContext], Awaitable[None]],
        ctx: CommandContext,
    ) -> None:
        try:
            await handler(ctx)
        except asyncio.CancelledError:
            raise
        except ConfigNotFound:
            await self._reply(
                ctx,
                "This server has no starboard configuration yet. "
                "Start with `/starboard whitelist add`.",
            )
        except sqlite3.Error:
            logger.exception("Database error while executing command %s", ctx.command)
            await self._reply(ctx, "⚠️ Database error. Please try again later.")
        except Exception:
            logger.exception("Unexpected error while executing command %s", ctx.command)
            await self._reply(ctx, "⚠️ Something went wrong. Please try again later.")

    async def _reply(self, ctx: CommandContext, text: str, *, ephemeral: bool = True) -> None:
        await self._api.respond_to_interaction(
            ctx.interaction_id, ctx.token, text, ephemeral=ephemeral
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def cmd_ping(self, ctx: CommandContext) -> None:
        latency = self._latency()
        if latency is None:
            await self._reply(ctx, "🏓 Pong! Latency: unknown", ephemeral=False)
            return
        await self._reply(ctx, f"🏓 Pong! Latency: {round(latency * 1000)}ms", ephemeral=False)

    async def cmd_starboard(self, ctx: CommandContext) -> None:
        guild_id = ctx.guild_id
        if guild_id is None:
            await self._reply(ctx, "This command only works inside a server.")
            return
        handlers: dict[tuple[str, ...], Callable[[CommandContext, str], Awaitable[None]]] = {
            ("whitelist", "add"): self._whitelist_add,
            ("whitelist", "remove"): self._whitelist_remove,
            ("whitelist", "set"): self._whitelist_set,
            ("whitelist", "list"): self._whitelist_list,
            ("repost",): self._repost_level,
        }
        handler = handlers.get(ctx.path)
        if handler is None:
            await self._reply(ctx, "Unknown subcommand. Try `/starboard whitelist list`.")
            return
        await handler(ctx, guild_id)

    async def _whitelist_add(self, ctx: CommandContext, guild_id: str) -> None:
        channel_id = await self._require_channel(ctx)
        if channel_id is None:
            return
        guild_name = await self._guild_name(guild_id)
        added = self._store.add_to_set(
            guild_id, "whitelist", channel_id, guild_name=guild_name
        )
        if added:
            await self._reply(ctx, f"✅ <#{channel_id}> is now tracked for reactions.")
        else:
            await self._reply(ctx, f"<#{channel_id}> is already tracked.")

    async def _whitelist_remove(self, ctx: CommandContext, guild_id: str) -> None:
        channel_id = await self._require_channel(ctx)
        if channel_id is None:
            return
        guild_name = await self._guild_name(guild_id)
        removed = self._store.pull(guild_id, "whitelist", channel_id, guild_name=guild_name)
        if removed:
            await self._reply(ctx, f"🗑️ <#{channel_id}> is no longer tracked.")
        else:
            await self._reply(ctx, f"<#{channel_id}> was not tracked.")

    async def _whitelist_set(self, ctx: CommandContext, guild_id: str) -> None:
        channel_id = await self._require_channel(ctx)
        if channel_id is None:
            return
        guild_name = await self._guild_name(guild_id)
        self._store.replace_set(guild_id, "starboard", channel_id, guild_name=guild_name)
        await self._reply(ctx, f"⭐ Reposts will be sent to <#{channel_id}>.")

    async def _whitelist_list(self, ctx: CommandContext, guild_id: str) -> None:
        channel_ids = self._store.list_whitelist(guild_id)
        if channel_ids is None:
            raise ConfigNotFound(guild_id)
        if not channel_ids:
            await self._reply(ctx, "No channels are tracked yet.")
            return
        lines = ["Tracked channels:"]
        lines.extend(f"• <#{channel_id}>" for channel_id in channel_ids)
        await self._reply(ctx, "\n".join(lines))

    async def _repost_level(self, ctx: CommandContext, guild_id: str) -> None:
        level = _int_option(ctx.options.get("level"))
        count = _int_option(ctx.options.get("count"))
        if level is None or not 1 <= level <= _MAX_LEVEL:
            await self._reply(ctx, f"Level must be between 1 and {_MAX_LEVEL}.")
            return
        if count is None or count < 0:
            await self._reply(ctx, "Reaction count must be zero or more.")
            return
        guild_name = await self._guild_name(guild_id)
        self._store.set_level(guild_id, level, count, guild_name=guild_name)
        title = level_title(level)
        await self._reply(
            ctx,
            f"{title.split(' ', 1)[0]} Level {level} now triggers at exactly {count} reactions.",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _require_channel(self, ctx: CommandContext) -> str | None:
        channel_id = parse_snowflake(ctx.options.get("channel"))
        if channel_id is None:
            await self._reply(ctx, "Please pick a channel.")
        return channel_id

    async def _guild_name(self, guild_id: str) -> str | None:
        try:
            return await self._api.fetch_guild_name(guild_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Could not resolve the name of guild %s", guild_id, exc_info=True)
            return None


def parse_command(interaction: Mapping[str, Any]) -> CommandContext | None:
    """Flatten an application command interaction into a context."""

    interaction_id = str(interaction.get("id") or "")
    token = str(interaction.get("token") or "")
    data = interaction.get("data") or {}
    name = str(data.get("name") or "").strip().lower()
    if not interaction_id or not token or not name:
        return None

    member = interaction.get("member") or {}
    user = member.get("user") or interaction.get("user") or {}

    path: list[str] = []
    options: Sequence[Mapping[str, Any]] = data.get("options") or []
    while True:
        nested = next(
            (
                option
                for option in options
                if option.get("type") in (_OPTION_SUB_COMMAND, _OPTION_SUB_COMMAND_GROUP)
            ),
            None,
        )
        if nested is None:
            break
        path.append(str(nested.get("name") or ""))
        options = nested.get("options") or []

    values = {
        str(option.get("name")): option.get("value")
        for option in options
        if option.get("name") is not None
    }
    return CommandContext(
        interaction_id=interaction_id,
        token=token,
        guild_id=parse_snowflake(interaction.get("guild_id")),
        channel_id=parse_snowflake(interaction.get("channel_id")),
        user_id=parse_snowflake(user.get("id")),
        command=name,
        path=tuple(path),
        options=values,
        interaction=interaction,
    )


def _int_option(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
