from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import sqlite3
from typing import Any, Callable

from .errors import PlayerNotFoundError, UnknownSectionError, VersionConflictError
from .models import MatchRecord, Player, QueuedPlayer, RewardGrant
from .schema import SECTION_MODELS, BotConfig, ConfigModel, dump_section, merge_section, validate_section

logger = logging.getLogger("late-league.storage")

MIN_MMR = 0
MAX_MMR = 10000
MAX_TOP_PLAYERS = 100
VALID_MATCH_STATUSES = {"active", "completed", "cancelled"}
EXPORT_TABLES = ("players", "queue", "matches", "match_archive", "reward_grants", "bot_config")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class Database:
    def __init__(self, path: str, default_mmr: int | None = None) -> None:
        self.conn = sqlite3.connect(path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._config_cache: BotConfig | None = None
        self._create_schema()
        self._ensure_player_columns()
        self._ensure_config_rows()
        self._default_mmr = default_mmr

    @property
    def default_mmr(self) -> int:
        if self._default_mmr is not None:
            return self._default_mmr
        return self.get_config().mmr_system.starting_mmr

    def _clamp_mmr(self, value: int) -> int:
        if value < MIN_MMR:
            return MIN_MMR
        if value > MAX_MMR:
            return MAX_MMR
        return value

    def _create_schema(self) -> None:
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS players (
                    discord_id INTEGER PRIMARY KEY,
                    username TEXT NOT NULL,
                    mmr INTEGER NOT NULL,
                    wins INTEGER NOT NULL DEFAULT 0,
                    losses INTEGER NOT NULL DEFAULT 0,
                    win_streak INTEGER NOT NULL DEFAULT 0,
                    loss_streak INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue (
                    discord_id INTEGER PRIMARY KEY,
                    joined_at TEXT NOT NULL,
                    FOREIGN KEY (discord_id) REFERENCES players(discord_id) ON DELETE CASCADE
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS matches (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    season INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    finished_at TEXT,
                    winning_team TEXT,
                    teams_json TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS match_archive (
                    id INTEGER PRIMARY KEY,
                    season INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    finished_at TEXT,
                    winning_team TEXT,
                    teams_json TEXT NOT NULL,
                    archived_at TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bot_config (
                    section TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS reward_grants (
                    season INTEGER NOT NULL,
                    discord_id INTEGER NOT NULL,
                    tier_name TEXT NOT NULL,
                    mmr INTEGER NOT NULL,
                    granted_at TEXT NOT NULL,
                    notified_at TEXT,
                    PRIMARY KEY (season, discord_id)
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS season_actions (
                    action TEXT NOT NULL,
                    idempotency_key TEXT NOT NULL,
                    response_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (action, idempotency_key)
                )
                """
            )

    def _ensure_player_columns(self) -> None:
        columns = {
            row["name"]
            for row in self.conn.execute("PRAGMA table_info(players)").fetchall()
        }
        with self.conn:
            if "placement_matches_played" not in columns:
                self.conn.execute(
                    """
                    ALTER TABLE players
                    ADD COLUMN placement_matches_played INTEGER NOT NULL DEFAULT 0
                    """
                )
            if "placement_matches_complete" not in columns:
                self.conn.execute(
                    """
                    ALTER TABLE players
                    ADD COLUMN placement_matches_complete INTEGER NOT NULL DEFAULT 0
                    """
                )
            if "season_id" not in columns:
                self.conn.execute(
                    """
                    ALTER TABLE players
                    ADD COLUMN season_id INTEGER NOT NULL DEFAULT 1
                    """
                )

    def _ensure_config_rows(self) -> None:
        defaults = BotConfig().to_document()
        now = utc_now_iso()
        with self.conn:
            self.conn.executemany(
                """
                INSERT INTO bot_config (section, payload, version, updated_at)
                VALUES (?, ?, 1, ?)
                ON CONFLICT(section) DO NOTHING
                """,
                [(section, json.dumps(defaults[section]), now) for section in SECTION_MODELS],
            )

    def close(self) -> None:
        self.conn.close()

    # Configuration

    def get_config(self) -> BotConfig:
        if self._config_cache is None:
            rows = self.conn.execute("SELECT section, payload FROM bot_config").fetchall()
            document = {
                row["section"]: json.loads(row["payload"])
                for row in rows
                if row["section"] in SECTION_MODELS
            }
            self._config_cache = BotConfig.from_document(document)
        return self._config_cache

    def invalidate_config_cache(self) -> None:
        self._config_cache = None

    def get_section_version(self, section: str) -> int:
        row = self.conn.execute(
            """
            SELECT version
            FROM bot_config
            WHERE section = ?
            """,
            (section,),
        ).fetchone()
        if row is None:
            raise UnknownSectionError(section)
        return int(row["version"])

    def get_section_versions(self) -> dict[str, int]:
        rows = self.conn.execute("SELECT section, version FROM bot_config").fetchall()
        return {row["section"]: int(row["version"]) for row in rows}

    def update_config_section(
        self,
        section: str,
        patch: Any,
        *,
        expected_version: int | None = None,
    ) -> tuple[ConfigModel, int]:
        if section not in SECTION_MODELS:
            raise UnknownSectionError(section)

        row = self.conn.execute(
            """
            SELECT payload, version
            FROM bot_config
            WHERE section = ?
            """,
            (section,),
        ).fetchone()
        current_version = int(row["version"])
        if expected_version is not None and expected_version != current_version:
            raise VersionConflictError(section, expected_version, current_version)

        current = json.loads(row["payload"])
        merged = merge_section(current, patch) if isinstance(patch, dict) else patch
        model = validate_section(section, merged)

        with self.conn:
            result = self.conn.execute(
                """
                UPDATE bot_config
                SET payload = ?, version = version + 1, updated_at = ?
                WHERE section = ?
                  AND version = ?
                """,
                (json.dumps(dump_section(model)), utc_now_iso(), section, current_version),
            )
        if result.rowcount == 0:
            raise VersionConflictError(section, current_version, self.get_section_version(section))

        self.invalidate_config_cache()
        logger.info("Config section %s updated to version %s", section, current_version + 1)
        return model, current_version + 1

    def _store_section(self, section: str, model: ConfigModel) -> None:
        # Caller owns the transaction.
        self.conn.execute(
            """
            UPDATE bot_config
            SET payload = ?, version = version + 1, updated_at = ?
            WHERE section = ?
            """,
            (json.dumps(dump_section(model)), utc_now_iso(), section),
        )

    # Players

    def _row_to_player(self, row: sqlite3.Row) -> Player:
        return Player(
            discord_id=int(row["discord_id"]),
            username=row["username"],
            mmr=int(row["mmr"]),
            wins=int(row["wins"]),
            losses=int(row["losses"]),
            win_streak=int(row["win_streak"]),
            loss_streak=int(row["loss_streak"]),
            placement_matches_played=int(row["placement_matches_played"]),
            placement_matches_complete=bool(row["placement_matches_complete"]),
            season_id=int(row["season_id"]),
            is_active=bool(row["is_active"]),
        )

    def upsert_player(
        self,
        discord_id: int,
        username: str,
        mmr: int | None = None,
        **stats: int | bool,
    ) -> Player:
        allowed = {
            "wins",
            "losses",
            "win_streak",
            "loss_streak",
            "placement_matches_played",
            "placement_matches_complete",
            "season_id",
            "is_active",
        }
        unknown = set(stats) - allowed
        if unknown:
            raise ValueError(f"Unknown player fields: {', '.join(sorted(unknown))}")

        now = utc_now_iso()
        current = self.get_player(discord_id)
        merged_mmr = self._clamp_mmr(int(mmr if mmr is not None else (current.mmr if current else self.default_mmr)))
        values: dict[str, int] = {}
        for field in sorted(allowed):
            if field in stats:
                values[field] = int(stats[field])
            elif current is not None:
                values[field] = int(getattr(current, field))
            elif field == "season_id":
                values[field] = self.get_config().season_management.current_season
            elif field == "is_active":
                values[field] = 1
            else:
                values[field] = 0

        with self.conn:
            self.conn.execute(
                """
                INSERT INTO players (
                    discord_id, username, mmr, wins, losses, win_streak, loss_streak,
                    placement_matches_played, placement_matches_complete, season_id, is_active,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(discord_id) DO UPDATE SET
                    username = excluded.username,
                    mmr = excluded.mmr,
                    wins = excluded.wins,
                    losses = excluded.losses,
                    win_streak = excluded.win_streak,
                    loss_streak = excluded.loss_streak,
                    placement_matches_played = excluded.placement_matches_played,
                    placement_matches_complete = excluded.placement_matches_complete,
                    season_id = excluded.season_id,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (
                    discord_id,
                    username,
                    merged_mmr,
                    values["wins"],
                    values["losses"],
                    values["win_streak"],
                    values["loss_streak"],
                    values["placement_matches_played"],
                    values["placement_matches_complete"],
                    values["season_id"],
                    values["is_active"],
                    now,
                    now,
                ),
            )
        return self.require_player(discord_id)

    def get_player(self, discord_id: int) -> Player | None:
        row = self.conn.execute(
            """
            SELECT *
            FROM players
            WHERE discord_id = ?
            """,
            (discord_id,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_player(row)

    def require_player(self, discord_id: int) -> Player:
        player = self.get_player(discord_id)
        if player is None:
            raise PlayerNotFoundError(discord_id)
        return player

    def list_top_players(self, limit: int = 10) -> list[Player]:
        limit = max(1, min(limit, MAX_TOP_PLAYERS))
        rows = self.conn.execute(
            """
            SELECT *
            FROM players
            WHERE is_active = 1
            ORDER BY mmr DESC, wins DESC, discord_id ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [self._row_to_player(row) for row in rows]

    def list_active_players(self) -> list[Player]:
        rows = self.conn.execute(
            """
            SELECT *
            FROM players
            WHERE is_active = 1
            ORDER BY mmr DESC, discord_id ASC
            """
        ).fetchall()
        return [self._row_to_player(row) for row in rows]

    def count_players(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS total FROM players").fetchone()
        return int(row["total"])

    # Queue

    def enqueue(self, discord_id: int) -> bool:
        self.require_player(discord_id)
        with self.conn:
            result = self.conn.execute(
                """
                INSERT INTO queue (discord_id, joined_at)
                VALUES (?, ?)
                ON CONFLICT(discord_id) DO NOTHING
                """,
                (discord_id, utc_now_iso()),
            )
        return result.rowcount > 0

    def list_queue(self) -> list[QueuedPlayer]:
        rows = self.conn.execute(
            """
            SELECT q.discord_id, p.username, p.mmr, q.joined_at
            FROM queue q
            JOIN players p ON p.discord_id = q.discord_id
            ORDER BY q.joined_at ASC, q.discord_id ASC
            """
        ).fetchall()
        return [
            QueuedPlayer(
                discord_id=int(row["discord_id"]),
                username=row["username"],
                mmr=int(row["mmr"]),
                joined_at=row["joined_at"],
            )
            for row in rows
        ]

    def clear_queue(self) -> int:
        with self.conn:
            result = self.conn.execute("DELETE FROM queue")
        return result.rowcount

    # Matches

    def record_match(self, teams: dict[str, list[int]], *, season: int | None = None, status: str = "active") -> int:
        if status not in VALID_MATCH_STATUSES:
            raise ValueError(f"Invalid match status: {status}")
        if season is None:
            season = self.get_config().season_management.current_season
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO matches (season, status, created_at, teams_json)
                VALUES (?, ?, ?, ?)
                """,
                (season, status, utc_now_iso(), json.dumps(teams)),
            )
        return int(cursor.lastrowid)

    def finish_match(self, match_id: int, winning_team: str | None, status: str = "completed") -> bool:
        if status not in VALID_MATCH_STATUSES:
            raise ValueError(f"Invalid match status: {status}")
        with self.conn:
            result = self.conn.execute(
                """
                UPDATE matches
                SET status = ?, winning_team = ?, finished_at = ?
                WHERE id = ?
                """,
                (status, winning_team, utc_now_iso(), match_id),
            )
        return result.rowcount > 0

    def _row_to_match(self, row: sqlite3.Row) -> MatchRecord:
        return MatchRecord(
            match_id=int(row["id"]),
            season=int(row["season"]),
            status=row["status"],
            created_at=row["created_at"],
            finished_at=row["finished_at"],
            winning_team=row["winning_team"],
            teams_json=row["teams_json"],
        )

    def list_matches(self) -> list[MatchRecord]:
        rows = self.conn.execute("SELECT * FROM matches ORDER BY id ASC").fetchall()
        return [self._row_to_match(row) for row in rows]

    def list_archived_matches(self) -> list[MatchRecord]:
        rows = self.conn.execute("SELECT * FROM match_archive ORDER BY id ASC").fetchall()
        return [self._row_to_match(row) for row in rows]

    # Season lifecycle

    def begin_new_season(
        self,
        season: ConfigModel,
        new_mmr: Callable[[int], int] | None,
    ) -> int:
        """Store the new season section and reset player progress in one transaction.

        ``new_mmr`` maps a player's current MMR to the new season's starting
        value; None keeps MMR untouched. Returns the number of players reset.
        """
        season_number = season.current_season
        now = utc_now_iso()
        try:
            with self.conn:
                self._store_section("seasonManagement", season)
                rows = self.conn.execute("SELECT discord_id, mmr FROM players").fetchall()
                if new_mmr is not None:
                    self.conn.executemany(
                        """
                        UPDATE players
                        SET mmr = ?, updated_at = ?
                        WHERE discord_id = ?
                        """,
                        [
                            (self._clamp_mmr(new_mmr(int(row["mmr"]))), now, int(row["discord_id"]))
                            for row in rows
                        ],
                    )
                self.conn.execute(
                    """
                    UPDATE players
                    SET placement_matches_played = 0,
                        placement_matches_complete = 0,
                        win_streak = 0,
                        loss_streak = 0,
                        season_id = ?,
                        updated_at = ?
                    """,
                    (season_number, now),
                )
        finally:
            self.invalidate_config_cache()
        return len(rows)

    def reset_season_data(self, season: ConfigModel, starting_mmr: int) -> dict[str, int]:
        now = utc_now_iso()
        try:
            with self.conn:
                archived = self.conn.execute(
                    """
                    INSERT OR REPLACE INTO match_archive (
                        id, season, status, created_at, finished_at, winning_team, teams_json, archived_at
                    )
                    SELECT id, season, status, created_at, finished_at, winning_team, teams_json, ?
                    FROM matches
                    """,
                    (now,),
                ).rowcount
                self.conn.execute("DELETE FROM matches")
                players_reset = self.conn.execute(
                    """
                    UPDATE players
                    SET mmr = ?,
                        wins = 0,
                        losses = 0,
                        win_streak = 0,
                        loss_streak = 0,
                        placement_matches_played = 0,
                        placement_matches_complete = 0,
                        season_id = 1,
                        updated_at = ?
                    """,
                    (self._clamp_mmr(starting_mmr), now),
                ).rowcount
                queue_cleared = self.conn.execute("DELETE FROM queue").rowcount
                self._store_section("seasonManagement", season)
        finally:
            self.invalidate_config_cache()
        return {
            "matchesArchived": max(archived, 0),
            "playersReset": max(players_reset, 0),
            "queueCleared": max(queue_cleared, 0),
        }

    def record_reward_grants(self, season: int, grants: list[tuple[int, str, int]]) -> int:
        now = utc_now_iso()
        inserted = 0
        with self.conn:
            for discord_id, tier_name, mmr in grants:
                result = self.conn.execute(
                    """
                    INSERT INTO reward_grants (season, discord_id, tier_name, mmr, granted_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(season, discord_id) DO NOTHING
                    """,
                    (season, discord_id, tier_name, mmr, now),
                )
                inserted += result.rowcount
        return inserted

    def _row_to_grant(self, row: sqlite3.Row) -> RewardGrant:
        return RewardGrant(
            season=int(row["season"]),
            discord_id=int(row["discord_id"]),
            tier_name=row["tier_name"],
            mmr=int(row["mmr"]),
            granted_at=row["granted_at"],
            notified_at=row["notified_at"],
        )

    def list_reward_grants(self, season: int) -> list[RewardGrant]:
        rows = self.conn.execute(
            """
            SELECT *
            FROM reward_grants
            WHERE season = ?
            ORDER BY mmr DESC, discord_id ASC
            """,
            (season,),
        ).fetchall()
        return [self._row_to_grant(row) for row in rows]

    def list_pending_reward_notices(self, season: int) -> list[RewardGrant]:
        return [grant for grant in self.list_reward_grants(season) if grant.notified_at is None]

    def mark_reward_notified(self, season: int, discord_id: int) -> None:
        with self.conn:
            self.conn.execute(
                """
                UPDATE reward_grants
                SET notified_at = ?
                WHERE season = ?
                  AND discord_id = ?
                """,
                (utc_now_iso(), season, discord_id),
            )

    def get_season_action(self, action: str, idempotency_key: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            """
            SELECT response_json
            FROM season_actions
            WHERE action = ?
              AND idempotency_key = ?
            """,
            (action, idempotency_key),
        ).fetchone()
        if row is None:
            return None
        return json.loads(row["response_json"])

    def save_season_action(self, action: str, idempotency_key: str, response: dict[str, Any]) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO season_actions (action, idempotency_key, response_json, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(action, idempotency_key) DO NOTHING
                """,
                (action, idempotency_key, json.dumps(response), utc_now_iso()),
            )

    # Export

    def dump_tables(self) -> dict[str, list[dict[str, Any]]]:
        tables: dict[str, list[dict[str, Any]]] = {}
        for table in EXPORT_TABLES:
            rows = self.conn.execute(f"SELECT * FROM {table}").fetchall()
            tables[table] = [dict(row) for row in rows]
        return tables
