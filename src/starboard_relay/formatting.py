"""Repost formatting helpers."""

from __future__ import annotations

from typing import Iterable

from .models import ReactionCount, RepostPayload, StarMessage

_LEVEL_TITLES = {
    1: "✨ interesting post from",
    2: "⭐ very interesting post from",
    3: "🔥 this post is blazing from",
}
_CHANNEL_ICON = "📣"
_REACTION_ARROW = "→"
_REACTION_SEPARATOR = " ✦ "
_MESSAGE_LIMIT = 2000
_ELLIPSIS = "…"


def level_title(level: int) -> str:
    """Title prefix for a star level; unknown levels have no title."""

    return _LEVEL_TITLES.get(level, "")


def render_emoji(reaction: ReactionCount) -> str:
    if reaction.emoji_id:
        prefix = "a" if reaction.animated else ""
        return f"<{prefix}:{reaction.emoji_name or '_'}:{reaction.emoji_id}>"
    return reaction.emoji_name


def render_reactions(reactions: Iterable[ReactionCount]) -> str:
    parts = [
        f"{render_emoji(reaction)} {_REACTION_ARROW} {reaction.count}"
        for reaction in reactions
        if reaction.count > 0
    ]
    return _REACTION_SEPARATOR.join(parts)


def format_repost(
    message: StarMessage,
    level: int,
    *,
    channel_name: str | None = None,
    destination_channel_id: str | None = None,
) -> RepostPayload:
    """Build the webhook payload reposting ``message`` at ``level``."""

    lines: list[str] = [_build_header(message.channel_id, channel_name)]

    title = level_title(level)
    byline = f"**{message.author_display_name}** ({message.author_tag})"
    lines.append(f"{title} {byline}" if title else byline)

    content = (message.content or "").strip()
    if content:
        lines.append(content)

    reactions = render_reactions(message.reactions)
    if reactions:
        lines.append(reactions)

    return RepostPayload(
        content="\n".join(lines),
        display_name=message.author_display_name,
        avatar_url=message.author_avatar_url,
        attachment_urls=tuple(message.attachment_urls),
        destination_channel_id=destination_channel_id,
    )


def compose_webhook_content(
    content: str,
    attachment_urls: Iterable[str] = (),
    *,
    limit: int = _MESSAGE_LIMIT,
) -> str:
    """Append attachment URLs to ``content`` keeping the result under ``limit``."""

    urls = [url for url in attachment_urls if url]
    tail = "\n".join(urls)
    budget = limit - (len(tail) + 1 if tail else 0)
    if budget <= 0:
        # URLs alone overflow the message; keep the text.
        return _truncate(content, limit)
    text = _truncate(content, budget)
    if not tail:
        return text
    if not text:
        return tail
    return f"{text}\n{tail}"


def _build_header(channel_id: str, channel_name: str | None) -> str:
    name = (channel_name or "").strip()
    label = f"#{name}" if name else f"<#{channel_id}>"
    return f"{_CHANNEL_ICON} {label}"


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= len(_ELLIPSIS):
        return text[:limit]
    return text[: limit - len(_ELLIPSIS)].rstrip() + _ELLIPSIS
