"""Reaction-triggered repost pipeline."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Protocol

from .deduplication import InFlightGuard
from .errors import DeliveryFailure, FetchFailure, PersistenceFailure
from .formatting import format_repost
from .models import (
    DeliveryEndpoint,
    GuildSettings,
    ReactionEvent,
    RepostOutcome,
    RepostPayload,
    RepostRecord,
    StarMessage,
)
from .rotation import EndpointRotator
from .utils import utcnow

logger = logging.getLogger(__name__)


class SettingsSource(Protocol):
    def find_by_community(self, guild_id: str) -> GuildSettings | None: ...


class RepostLedger(Protocol):
    def create_repost(self, record: RepostRecord) -> None: ...


class MessageSource(Protocol):
    async def fetch_message(self, channel_id: str, message_id: str) -> StarMessage: ...

    async def fetch_channel_name(self, channel_id: str) -> str | None: ...


class RepostSender(Protocol):
    async def execute_webhook(
        self, endpoint: DeliveryEndpoint, payload: RepostPayload
    ) -> str: ...


class StarboardEngine:
    """Decide whether a reaction pushes a message onto the starboard and repost it.

    Each call to :meth:`handle_reaction` walks the pipeline:

    1. load the guild settings (no settings means nothing is tracked);
    2. skip channels outside the whitelist;
    3. claim the message in the in-flight guard so concurrent reactions on the
       same message cannot repost it twice;
    4. refetch the message, since the event may be stale, and sum all reaction
       counts;
    5. look for a level whose threshold equals that sum exactly;
    6. resolve the starboard channel;
    7. format the repost and send it through the next webhook endpoint;
    8. record the repost in the ledger.

    The guard is released on every path once it was claimed. Failures are
    logged and reported through the returned :class:`RepostOutcome`; a repost
    is delivered at most once and never retried.
    """

    def __init__(
        self,
        *,
        settings: SettingsSource,
        ledger: RepostLedger,
        messages: MessageSource,
        sender: RepostSender,
        rotator: EndpointRotator,
        guard: InFlightGuard | None = None,
    ):
        self._settings = settings
        self._ledger = ledger
        self._messages = messages
        self._sender = sender
        self._rotator = rotator
        self._guard = guard or InFlightGuard()

    @property
    def guard(self) -> InFlightGuard:
        return self._guard

    async def handle_reaction(self, event: ReactionEvent) -> RepostOutcome:
        try:
            settings = self._settings.find_by_community(event.guild_id)
        except sqlite3.Error:
            logger.exception("Failed to load settings for guild %s", event.guild_id)
            return RepostOutcome("error", "settings_unavailable")

        if settings is None:
            logger.debug("Guild %s has no starboard settings", event.guild_id)
            return RepostOutcome("ignored", "no_config")
        if not settings.is_whitelisted(event.channel_id):
            logger.debug(
                "Channel %s is not whitelisted in guild %s", event.channel_id, event.guild_id
            )
            return RepostOutcome("ignored", "not_whitelisted")

        with self._guard.hold(event.message_id) as acquired:
            if not acquired:
                logger.debug("Message %s is already being evaluated", event.message_id)
                return RepostOutcome("ignored", "in_flight")
            try:
                return await self._evaluate(event, settings)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Unexpected error while reposting message %s", event.message_id
                )
                return RepostOutcome("error", "unexpected")

    async def _evaluate(self, event: ReactionEvent, settings: GuildSettings) -> RepostOutcome:
        try:
            message = await self._messages.fetch_message(event.channel_id, event.message_id)
        except FetchFailure as exc:
            logger.warning("Could not refetch message %s: %s", event.message_id, exc)
            return RepostOutcome("failed", "fetch_failed")

        total = message.total_reactions
        star_level = settings.level_for(total)
        if star_level is None:
            logger.debug(
                "Message %s has %d reactions, no level matches", event.message_id, total
            )
            return RepostOutcome("ignored", "threshold_miss")

        if settings.is_starboard(event.channel_id):
            logger.debug("Message %s already lives in a starboard channel", event.message_id)
            return RepostOutcome("ignored", "starboard_source", level=star_level.level)
        destination = resolve_destination(settings)
        if destination is None:
            logger.info(
                "Guild %s reached level %d but has no starboard channel",
                event.guild_id,
                star_level.level,
            )
            return RepostOutcome("ignored", "no_destination", level=star_level.level)

        channel_name = await self._messages.fetch_channel_name(event.channel_id)
        payload = format_repost(
            message,
            star_level.level,
            channel_name=channel_name,
            destination_channel_id=destination,
        )

        endpoint = self._rotator.current()
        try:
            reposted_id = await self._sender.execute_webhook(endpoint, payload)
        except DeliveryFailure as exc:
            logger.warning(
                "Dropping repost of message %s via webhook %s: %s",
                event.message_id,
                endpoint.id,
                exc,
            )
            return RepostOutcome(
                "failed", "delivery_failed", level=star_level.level, endpoint_id=endpoint.id
            )
        self._rotator.advance()

        logger.info(
            "Reposted message %s at level %d to channel %s as %s",
            event.message_id,
            star_level.level,
            destination,
            reposted_id,
        )
        record = RepostRecord(
            guild_id=settings.guild_id,
            guild_name=settings.guild_name,
            original_message_id=message.id,
            reposted_message_id=reposted_id,
            timestamp=utcnow(),
        )
        try:
            self._ledger.create_repost(record)
        except PersistenceFailure:
            logger.exception(
                "Repost %s was delivered but not recorded", reposted_id
            )
            return RepostOutcome(
                "failed",
                "persistence_failed",
                level=star_level.level,
                reposted_message_id=reposted_id,
                endpoint_id=endpoint.id,
            )

        return RepostOutcome(
            "reposted",
            level=star_level.level,
            reposted_message_id=reposted_id,
            endpoint_id=endpoint.id,
        )


def resolve_destination(settings: GuildSettings) -> str | None:
    """The earliest configured starboard channel, if any."""

    if not settings.starboard_channel_ids:
        return None
    return settings.starboard_channel_ids[0]
