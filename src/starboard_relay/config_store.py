"""SQLite backed storage for guild settings and the repost ledger."""

from __future__ import annotations

import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path

from .errors import PersistenceFailure
from .models import GuildSettings, RepostRecord, StarLevel
from .utils import utcnow

_DB_PRAGMA = "PRAGMA journal_mode=WAL;" "PRAGMA synchronous=NORMAL;" "PRAGMA foreign_keys=ON;"

_CHANNEL_TABLES = {
    "whitelist": "whitelist_channels",
    "starboard": "starboard_channels",
}


class ConfigStore:
    """Persisted guild settings and the append-only repost ledger."""

    def __init__(self, path: Path | str):
        self._path = path
        self._conn = sqlite3.connect(self._path)
        self._conn.row_factory = sqlite3.Row
        self._setup()

    # ------------------------------------------------------------------
    # Schema initialisation
    # ------------------------------------------------------------------
    def _setup(self) -> None:
        with closing(self._conn.cursor()) as cur:
            for statement in _DB_PRAGMA.split(";"):
                if statement.strip():
                    cur.execute(statement)
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS guilds (
                    guild_id TEXT PRIMARY KEY,
                    guild_name TEXT NOT NULL DEFAULT '',
                    created_at TEXT
                );

                CREATE TABLE IF NOT EXISTS whitelist_channels (
                    guild_id TEXT NOT NULL,
                    channel_id TEXT NOT NULL,
                    added_at TEXT,
                    PRIMARY KEY (guild_id, channel_id)
                );

                CREATE TABLE IF NOT EXISTS starboard_channels (
                    guild_id TEXT NOT NULL,
                    channel_id TEXT NOT NULL,
                    added_at TEXT,
                    PRIMARY KEY (guild_id, channel_id)
                );

                CREATE TABLE IF NOT EXISTS star_levels (
                    guild_id TEXT NOT NULL,
                    level INTEGER NOT NULL,
                    min_reactions INTEGER NOT NULL,
                    PRIMARY KEY (guild_id, level)
                );

                CREATE TABLE IF NOT EXISTS reposts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    guild_id TEXT NOT NULL,
                    guild_name TEXT NOT NULL DEFAULT '',
                    original_message_id TEXT NOT NULL,
                    reposted_message_id TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_reposts_guild
                    ON reposts(guild_id, created_at);
                """
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Guild settings
    # ------------------------------------------------------------------
    def find_by_community(self, guild_id: str) -> GuildSettings | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT guild_id, guild_name FROM guilds WHERE guild_id=?", (guild_id,))
            row = cur.fetchone()
            if row is None:
                return None
            whitelist = self._channel_ids(cur, "whitelist_channels", guild_id)
            starboard = self._channel_ids(cur, "starboard_channels", guild_id)
            cur.execute(
                "SELECT level, min_reactions FROM star_levels WHERE guild_id=? ORDER BY level",
                (guild_id,),
            )
            levels = [
                StarLevel(level=int(item["level"]), min_reactions=int(item["min_reactions"]))
                for item in cur.fetchall()
            ]
        return GuildSettings(
            guild_id=str(row["guild_id"]),
            guild_name=str(row["guild_name"] or ""),
            whitelist_channel_ids=whitelist,
            starboard_channel_ids=starboard,
            star_levels=levels,
        )

    def add_to_set(
        self,
        guild_id: str,
        field: str,
        channel_id: str,
        *,
        guild_name: str | None = None,
    ) -> bool:
        """Add ``channel_id`` to a channel set, creating the guild if needed.

        Returns True when the channel was not present before.
        """

        table = _channel_table(field)
        with closing(self._conn.cursor()) as cur:
            self._ensure_guild(cur, guild_id, guild_name)
            cur.execute(
                f"INSERT OR IGNORE INTO {table}(guild_id, channel_id, added_at) VALUES(?, ?, ?)",
                (guild_id, channel_id, utcnow().isoformat()),
            )
            inserted = cur.rowcount > 0
            self._conn.commit()
        return inserted

    def pull(
        self,
        guild_id: str,
        field: str,
        channel_id: str,
        *,
        guild_name: str | None = None,
    ) -> bool:
        """Remove ``channel_id`` from a channel set; missing entries are ignored."""

        table = _channel_table(field)
        with closing(self._conn.cursor()) as cur:
            self._ensure_guild(cur, guild_id, guild_name)
            cur.execute(
                f"DELETE FROM {table} WHERE guild_id=? AND channel_id=?",
                (guild_id, channel_id),
            )
            removed = cur.rowcount > 0
            self._conn.commit()
        return removed

    def replace_set(
        self,
        guild_id: str,
        field: str,
        channel_id: str,
        *,
        guild_name: str | None = None,
    ) -> None:
        """Make ``channel_id`` the only member of a channel set."""

        table = _channel_table(field)
        with closing(self._conn.cursor()) as cur:
            self._ensure_guild(cur, guild_id, guild_name)
            cur.execute(
                f"DELETE FROM {table} WHERE guild_id=? AND channel_id!=?",
                (guild_id, channel_id),
            )
            cur.execute(
                f"INSERT OR IGNORE INTO {table}(guild_id, channel_id, added_at) VALUES(?, ?, ?)",
                (guild_id, channel_id, utcnow().isoformat()),
            )
            self._conn.commit()

    def set_level(
        self,
        guild_id: str,
        level: int,
        min_reactions: int,
        *,
        guild_name: str | None = None,
    ) -> StarLevel:
        if level <= 0:
            raise ValueError("Level must be a positive integer")
        if min_reactions < 0:
            raise ValueError("Reaction count must not be negative")
        with closing(self._conn.cursor()) as cur:
            self._ensure_guild(cur, guild_id, guild_name)
            cur.execute(
                "INSERT INTO star_levels(guild_id, level, min_reactions) VALUES(?, ?, ?)"
                " ON CONFLICT(guild_id, level) DO UPDATE SET min_reactions=excluded.min_reactions",
                (guild_id, int(level), int(min_reactions)),
            )
            self._conn.commit()
        return StarLevel(level=int(level), min_reactions=int(min_reactions))

    def list_whitelist(self, guild_id: str) -> list[str] | None:
        """Whitelisted channel ids, or None when the guild has no settings."""

        settings = self.find_by_community(guild_id)
        if settings is None:
            return None
        return list(settings.whitelist_channel_ids)

    # ------------------------------------------------------------------
    # Repost ledger
    # ------------------------------------------------------------------
    def create_repost(self, record: RepostRecord) -> None:
        try:
            with closing(self._conn.cursor()) as cur:
                cur.execute(
                    "INSERT INTO reposts(guild_id, guild_name, original_message_id,"
                    " reposted_message_id, created_at) VALUES(?, ?, ?, ?, ?)",
                    (
                        record.guild_id,
                        record.guild_name,
                        record.original_message_id,
                        record.reposted_message_id,
                        record.timestamp.isoformat(),
                    ),
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceFailure(
                f"Failed to record repost of message {record.original_message_id}"
            ) from exc

    def list_reposts(self, guild_id: str, limit: int = 50) -> list[RepostRecord]:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT guild_id, guild_name, original_message_id, reposted_message_id, created_at"
                " FROM reposts WHERE guild_id=? ORDER BY id DESC LIMIT ?",
                (guild_id, max(1, int(limit))),
            )
            rows = cur.fetchall()
        return [
            RepostRecord(
                guild_id=str(row["guild_id"]),
                guild_name=str(row["guild_name"] or ""),
                original_message_id=str(row["original_message_id"]),
                reposted_message_id=str(row["reposted_message_id"]),
                timestamp=datetime.fromisoformat(str(row["created_at"])),
            )
            for row in rows
        ]

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _channel_ids(cur: sqlite3.Cursor, table: str, guild_id: str) -> list[str]:
        cur.execute(
            f"SELECT channel_id FROM {table} WHERE guild_id=? ORDER BY added_at, rowid",
            (guild_id,),
        )
        return [str(item["channel_id"]) for item in cur.fetchall()]

    @staticmethod
    def _ensure_guild(cur: sqlite3.Cursor, guild_id: str, guild_name: str | None) -> None:
        name = (guild_name or "").strip()
        cur.execute(
            "INSERT INTO guilds(guild_id, guild_name, created_at) VALUES(?, ?, ?)"
            " ON CONFLICT(guild_id) DO UPDATE SET guild_name=CASE"
            " WHEN excluded.guild_name != '' THEN excluded.guild_name"
            " ELSE guilds.guild_name END",
            (guild_id, name, utcnow().isoformat()),
        )


def _channel_table(field: str) -> str:
    table = _CHANNEL_TABLES.get(field)
    if table is None:
        raise ValueError(f"Unsupported channel set: {field}")
    return table
