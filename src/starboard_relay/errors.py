"""Exceptions raised by the starboard collaborators."""

from __future__ import annotations


class StarboardError(Exception):
    """Base class for starboard failures."""


class ConfigNotFound(StarboardError):
    """The community has no stored settings."""

    def __init__(self, guild_id: str):
        super().__init__(f"No starboard settings for guild {guild_id}")
        self.guild_id = guild_id


class FetchFailure(StarboardError):
    """Discord refused or failed to return the reacted message."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class DeliveryFailure(StarboardError):
    """The webhook did not accept the repost."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class PersistenceFailure(StarboardError):
    """The ledger write failed after the repost was delivered."""
