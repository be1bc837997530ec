"""Discord REST API client."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import aiohttp

from .errors import DeliveryFailure, FetchFailure
from .formatting import compose_webhook_content
from .models import DeliveryEndpoint, ReactionCount, RepostPayload, StarMessage
from .utils import RateLimiter

_API_BASE = "https://discord.com/api/v10"
_CDN_BASE = "https://cdn.discordapp.com"
_DEFAULT_USER_AGENT = "DiscordBot (https://github.com, 1.0)"
_WEBHOOK_NAME_LIMIT = 80
_EPHEMERAL_FLAG = 1 << 6
_CHANNEL_MESSAGE_WITH_SOURCE = 4


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TokenCheckResult:
    """Outcome of a Discord token validation attempt."""

    ok: bool
    display_name: str | None = None
    user_id: str | None = None
    error: str | None = None
    status: int | None = None


class DiscordClient:
    """Thin asynchronous wrapper around the Discord REST API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str | None = None,
        *,
        rate_limiter: RateLimiter | None = None,
    ):
        self._session = session
        self._token: str | None = None
        self._rate = rate_limiter
        self.set_token(token)

    def set_token(self, token: str | None) -> None:
        self._token = normalize_bot_token(token)

    async def fetch_message(self, channel_id: str, message_id: str) -> StarMessage:
        """Return the live state of a message, reactions included."""

        url = f"{_API_BASE}/channels/{channel_id}/messages/{message_id}"
        await self._wait_turn()
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=15)
            async with self._session.get(
                url,
                headers=self._auth_headers(),
                timeout=timeout_cfg,
            ) as resp:
                if resp.status >= 400:
                    await resp.read()
                    raise FetchFailure(
                        f"Discord returned status {resp.status} for message {message_id}",
                        status=resp.status,
                    )
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise FetchFailure(f"Failed to fetch message {message_id}: {exc}") from exc

        if not isinstance(data, Mapping):
            raise FetchFailure(f"Unexpected payload for message {message_id}")
        return parse_message(data, channel_id)

    async def fetch_channel_name(self, channel_id: str) -> str | None:
        url = f"{_API_BASE}/channels/{channel_id}"
        await self._wait_turn()
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=15)
            async with self._session.get(
                url,
                headers=self._auth_headers(),
                timeout=timeout_cfg,
            ) as resp:
                if resp.status >= 400:
                    logger.warning(
                        "Discord returned status %s for channel %s", resp.status, channel_id
                    )
                    await resp.read()
                    return None
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Failed to fetch channel %s: %s", channel_id, exc)
            return None

        if not isinstance(data, Mapping):
            return None
        name = str(data.get("name") or "").strip()
        return name or None

    async def fetch_guild_name(self, guild_id: str) -> str | None:
        url = f"{_API_BASE}/guilds/{guild_id}"
        await self._wait_turn()
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=15)
            async with self._session.get(
                url,
                headers=self._auth_headers(),
                timeout=timeout_cfg,
            ) as resp:
                if resp.status >= 400:
                    logger.debug("Discord returned status %s for guild %s", resp.status, guild_id)
                    await resp.read()
                    return None
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.debug("Failed to fetch guild %s: %s", guild_id, exc)
            return None

        if not isinstance(data, Mapping):
            return None
        name = str(data.get("name") or "").strip()
        return name or None

    async def execute_webhook(
        self, endpoint: DeliveryEndpoint, payload: RepostPayload
    ) -> str:
        """Post ``payload`` through ``endpoint`` and return the new message id."""

        url = f"{_API_BASE}/webhooks/{endpoint.id}/{endpoint.token}"
        body: dict[str, Any] = {
            "content": compose_webhook_content(payload.content, payload.attachment_urls),
            "allowed_mentions": {"parse": []},
        }
        username = payload.display_name.strip()[:_WEBHOOK_NAME_LIMIT]
        if username:
            body["username"] = username
        if payload.avatar_url:
            body["avatar_url"] = payload.avatar_url

        await self._wait_turn()
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=15)
            async with self._session.post(
                url,
                params={"wait": "true"},
                json=body,
                headers={"User-Agent": _DEFAULT_USER_AGENT},
                timeout=timeout_cfg,
            ) as resp:
                if resp.status >= 400:
                    detail = await resp.text()
                    raise DeliveryFailure(
                        f"Webhook {endpoint.id} returned status {resp.status}: {detail[:200]}",
                        status=resp.status,
                    )
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryFailure(f"Webhook {endpoint.id} request failed: {exc}") from exc

        message_id = str(data.get("id") or "") if isinstance(data, Mapping) else ""
        if not message_id:
            raise DeliveryFailure(f"Webhook {endpoint.id} did not return a message id")
        return message_id

    async def register_commands(
        self, application_id: str, commands: Sequence[Mapping[str, Any]]
    ) -> bool:
        url = f"{_API_BASE}/applications/{application_id}/commands"
        await self._wait_turn()
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=15)
            async with self._session.put(
                url,
                json=list(commands),
                headers=self._auth_headers(),
                timeout=timeout_cfg,
            ) as resp:
                if resp.status >= 400:
                    detail = await resp.text()
                    logger.warning(
                        "Discord returned status %s while registering commands: %s",
                        resp.status,
                        detail[:200],
                    )
                    return False
                await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Failed to register application commands: %s", exc)
            return False
        return True

    async def respond_to_interaction(
        self,
        interaction_id: str,
        interaction_token: str,
        content: str,
        *,
        ephemeral: bool = False,
    ) -> None:
        url = f"{_API_BASE}/interactions/{interaction_id}/{interaction_token}/callback"
        data: dict[str, Any] = {
            "content": compose_webhook_content(content),
            "allowed_mentions": {"parse": []},
        }
        if ephemeral:
            data["flags"] = _EPHEMERAL_FLAG
        body = {"type": _CHANNEL_MESSAGE_WITH_SOURCE, "data": data}
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=10)
            async with self._session.post(
                url,
                json=body,
                headers={"User-Agent": _DEFAULT_USER_AGENT},
                timeout=timeout_cfg,
            ) as resp:
                if resp.status >= 400:
                    logger.warning(
                        "Discord returned status %s for interaction %s",
                        resp.status,
                        interaction_id,
                    )
                await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Failed to answer interaction %s: %s", interaction_id, exc)

    async def verify_token(self) -> TokenCheckResult:
        if not self._token:
            return TokenCheckResult(ok=False, error="Token is not set")

        url = f"{_API_BASE}/users/@me"
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=15)
            async with self._session.get(
                url,
                headers=self._auth_headers(),
                timeout=timeout_cfg,
            ) as resp:
                status = resp.status
                if status == 200:
                    payload = await resp.json()
                    return TokenCheckResult(
                        ok=True,
                        display_name=str(payload.get("username") or "") or None,
                        user_id=str(payload.get("id") or "") or None,
                        status=status,
                    )
                await resp.read()
                if status == 401:
                    return TokenCheckResult(
                        ok=False, error="Discord rejected the token (401)", status=status
                    )
                return TokenCheckResult(
                    ok=False, error=f"Discord returned status {status}", status=status
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Failed to verify Discord token: %s", exc)
            return TokenCheckResult(ok=False, error="Discord is unreachable")

    def _auth_headers(self) -> dict[str, str]:
        headers = {
            "User-Agent": _DEFAULT_USER_AGENT,
            "Accept": "application/json",
        }
        if self._token:
            headers["Authorization"] = self._token
        return headers

    async def _wait_turn(self) -> None:
        if self._rate is not None:
            await self._rate.wait()


def normalize_bot_token(token: str | None) -> str | None:
    if token is None:
        return None
    stripped = token.strip()
    if not stripped:
        return None
    if stripped.lower().startswith("bot "):
        return f"Bot {stripped[4:].strip()}"
    return f"Bot {stripped}"


def avatar_url(user: Mapping[str, Any]) -> str:
    """CDN URL of a user's avatar, falling back to the default avatar."""

    user_id = str(user.get("id") or "0")
    avatar_hash = user.get("avatar")
    if avatar_hash:
        extension = "gif" if str(avatar_hash).startswith("a_") else "png"
        return f"{_CDN_BASE}/avatars/{user_id}/{avatar_hash}.{extension}"
    discriminator = str(user.get("discriminator") or "0")
    if discriminator.isdigit() and int(discriminator) != 0:
        index = int(discriminator) % 5
    else:
        index = (int(user_id) >> 22) % 6 if user_id.isdigit() else 0
    return f"{_CDN_BASE}/embed/avatars/{index}.png"


def parse_message(payload: Mapping[str, Any], channel_id: str) -> StarMessage:
    author = payload.get("author") or {}
    username = str(author.get("username") or "") or "Unknown"
    display_name = str(author.get("global_name") or "") or username
    discriminator_raw = author.get("discriminator")
    discriminator = str(discriminator_raw) if discriminator_raw else None

    attachment_urls = tuple(
        str(item.get("url"))
        for item in payload.get("attachments") or []
        if isinstance(item, Mapping) and item.get("url")
    )

    reactions: list[ReactionCount] = []
    for entry in payload.get("reactions") or []:
        if not isinstance(entry, Mapping):
            continue
        emoji = entry.get("emoji") or {}
        try:
            count = int(entry.get("count") or 0)
        except (TypeError, ValueError):
            count = 0
        emoji_id = emoji.get("id")
        reactions.append(
            ReactionCount(
                emoji_name=str(emoji.get("name") or ""),
                count=count,
                emoji_id=str(emoji_id) if emoji_id else None,
                animated=bool(emoji.get("animated")),
            )
        )

    return StarMessage(
        id=str(payload.get("id") or "0"),
        channel_id=str(payload.get("channel_id") or channel_id),
        guild_id=str(payload.get("guild_id")) if payload.get("guild_id") else None,
        author_id=str(author.get("id") or "0"),
        author_username=username,
        author_display_name=display_name,
        author_discriminator=discriminator,
        author_avatar_url=avatar_url(author),
        content=str(payload.get("content") or ""),
        attachment_urls=attachment_urls,
        reactions=tuple(reactions),
    )
