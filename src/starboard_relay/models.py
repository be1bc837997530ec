"""Data models used across the starboard service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence


@dataclass(slots=True)
class StarLevel:
    """Threshold tier: a repost fires when reactions equal ``min_reactions``."""

    level: int
    min_reactions: int


@dataclass(slots=True)
class GuildSettings:
    """Per-community starboard configuration."""

    guild_id: str
    guild_name: str = ""
    whitelist_channel_ids: list[str] = field(default_factory=list)
    starboard_channel_ids: list[str] = field(default_factory=list)
    star_levels: list[StarLevel] = field(default_factory=list)

    def is_whitelisted(self, channel_id: str) -> bool:
        return channel_id in self.whitelist_channel_ids

    def is_starboard(self, channel_id: str) -> bool:
        return channel_id in self.starboard_channel_ids

    def level_for(self, total_reactions: int) -> StarLevel | None:
        """Return the level whose threshold equals ``total_reactions`` exactly."""

        matches = [item for item in self.star_levels if item.min_reactions == total_reactions]
        if not matches:
            return None
        return min(matches, key=lambda item: item.level)


@dataclass(slots=True, frozen=True)
class RepostRecord:
    """Ledger entry written once per successful repost."""

    guild_id: str
    guild_name: str
    original_message_id: str
    reposted_message_id: str
    timestamp: datetime


@dataclass(slots=True, frozen=True)
class ReactionEvent:
    """Subset of the reaction-add dispatch used by the engine."""

    guild_id: str
    channel_id: str
    message_id: str
    user_id: str | None = None
    emoji: str | None = None


@dataclass(slots=True, frozen=True)
class ReactionCount:
    """Live count for one distinct emoji on a message."""

    emoji_name: str
    count: int
    emoji_id: str | None = None
    animated: bool = False


@dataclass(slots=True)
class StarMessage:
    """Message state refetched from Discord before deciding on a repost."""

    id: str
    channel_id: str
    guild_id: str | None
    author_id: str
    author_username: str
    author_display_name: str
    author_discriminator: str | None
    author_avatar_url: str
    content: str
    attachment_urls: Sequence[str] = ()
    reactions: Sequence[ReactionCount] = ()

    @property
    def author_tag(self) -> str:
        if self.author_discriminator and self.author_discriminator != "0":
            return f"{self.author_username}#{self.author_discriminator}"
        return self.author_username

    @property
    def total_reactions(self) -> int:
        return sum(max(0, reaction.count) for reaction in self.reactions)


@dataclass(slots=True, frozen=True)
class DeliveryEndpoint:
    """Webhook credentials used to post into the starboard."""

    id: str
    token: str

    def __repr__(self) -> str:
        return f"DeliveryEndpoint(id={self.id!r})"


@dataclass(slots=True)
class RepostPayload:
    """Outgoing webhook message produced by the formatter."""

    content: str
    display_name: str
    avatar_url: str
    attachment_urls: Sequence[str] = ()
    destination_channel_id: str | None = None


@dataclass(slots=True)
class RepostOutcome:
    """Result of evaluating a single reaction event."""

    status: str
    reason: str | None = None
    level: int | None = None
    reposted_message_id: str | None = None
    endpoint_id: str | None = None

    @property
    def reposted(self) -> bool:
        return self.status == "reposted"
