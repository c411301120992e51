from __future__ import annotations

import asyncio
import calendar
from datetime import datetime, timezone
import logging
import math
import sqlite3
from typing import Callable, Protocol

from .errors import ConfirmationRequiredError, SeasonActionError
from .models import RewardGrant, SeasonActionResult
from .ranks import resolve_tier
from .schema import SeasonConfig, dump_section
from .storage import Database

logger = logging.getLogger("late-league.seasons")

START_NEW_SEASON = "start-new-season"
DISTRIBUTE_REWARDS = "distribute-rewards"
RESET_SEASON_DATA = "reset-season-data"
RESET_CONFIRMATION = "RESET"
SEASON_LENGTH_MONTHS = 3
SOFT_RESET_RETENTION = 0.5


class RewardNotifier(Protocol):
    async def send_reward_notice(self, grant: RewardGrant) -> None: ...


class LoggingNotifier:
    async def send_reward_notice(self, grant: RewardGrant) -> None:
        logger.info(
            "Season %s reward %s for player %s (MMR %s)",
            grant.season,
            grant.tier_name,
            grant.discord_id,
            grant.mmr,
        )


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def soft_reset_mmr(mmr: int, starting_mmr: int, retention: float = SOFT_RESET_RETENTION) -> int:
    """Pull ``mmr`` toward ``starting_mmr``, keeping ``retention`` of the gap (half rounds up)."""
    return starting_mmr + math.floor((mmr - starting_mmr) * retention + 0.5)


def mmr_reset_function(reset_type: str, starting_mmr: int) -> Callable[[int], int] | None:
    if reset_type == "full":
        return lambda _mmr: starting_mmr
    if reset_type == "soft":
        return lambda mmr: soft_reset_mmr(mmr, starting_mmr)
    return None


class SeasonService:
    def __init__(self, db: Database, notifier: RewardNotifier | None = None) -> None:
        self.db = db
        self.notifier = notifier or LoggingNotifier()
        self._rewards_lock = asyncio.Lock()

    def _replay(self, action: str, idempotency_key: str | None) -> SeasonActionResult | None:
        if not idempotency_key:
            return None
        stored = self.db.get_season_action(action, idempotency_key)
        if stored is None:
            return None
        logger.info("Replaying %s for idempotency key %s", action, idempotency_key)
        message = str(stored.pop("message", ""))
        stored["replayed"] = True
        return SeasonActionResult(action=action, message=message, details=stored)

    def _remember(self, idempotency_key: str | None, result: SeasonActionResult) -> SeasonActionResult:
        if idempotency_key:
            self.db.save_season_action(result.action, idempotency_key, result.to_dict())
        return result

    def start_new_season(
        self,
        *,
        now: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> SeasonActionResult:
        replayed = self._replay(START_NEW_SEASON, idempotency_key)
        if replayed is not None:
            return replayed

        config = self.db.get_config()
        current = config.season_management
        starting_mmr = config.mmr_system.starting_mmr
        now = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        end = add_months(now, SEASON_LENGTH_MONTHS)
        updated = SeasonConfig.model_validate(
            {
                **dump_section(current),
                "currentSeason": current.current_season + 1,
                "seasonStartDate": now.isoformat(),
                "seasonEndDate": end.isoformat(),
            }
        )

        try:
            players_reset = self.db.begin_new_season(
                updated,
                mmr_reset_function(current.mmr_reset_type, starting_mmr),
            )
        except sqlite3.Error as exc:
            logger.exception("Starting season %s failed", updated.current_season)
            raise SeasonActionError(
                START_NEW_SEASON,
                f"Failed to start season {updated.current_season}; no changes were made.",
            ) from exc

        logger.info(
            "Season %s started (%s MMR reset, %s players)",
            updated.current_season,
            current.mmr_reset_type,
            players_reset,
        )
        message = f"Season {updated.current_season} has started."
        if current.mmr_reset_type != "none":
            message += f" Applied {current.mmr_reset_type} MMR reset to {players_reset} players."
        result = SeasonActionResult(
            action=START_NEW_SEASON,
            message=message,
            details={
                "currentSeason": updated.current_season,
                "seasonStartDate": updated.season_start_date,
                "seasonEndDate": updated.season_end_date,
                "mmrResetType": current.mmr_reset_type,
                "playersReset": players_reset,
            },
        )
        return self._remember(idempotency_key, result)

    async def distribute_rewards(self, *, idempotency_key: str | None = None) -> SeasonActionResult:
        # Pending notices are read and marked under this lock.
        async with self._rewards_lock:
            return await self._distribute_rewards(idempotency_key)

    async def _distribute_rewards(self, idempotency_key: str | None) -> SeasonActionResult:
        replayed = self._replay(DISTRIBUTE_REWARDS, idempotency_key)
        if replayed is not None:
            return replayed

        season_config = self.db.get_config().season_management
        season = season_config.current_season
        grants: list[tuple[int, str, int]] = []
        for player in self.db.list_active_players():
            tier = resolve_tier(player.mmr, season_config.reward_tiers)
            if tier is not None:
                grants.append((player.discord_id, tier.name, player.mmr))

        try:
            recorded = self.db.record_reward_grants(season, grants)
        except sqlite3.Error as exc:
            logger.exception("Recording season %s rewards failed", season)
            raise SeasonActionError(
                DISTRIBUTE_REWARDS,
                f"Failed to record season {season} rewards; no rewards were distributed.",
            ) from exc

        sent = 0
        failed: list[str] = []
        for grant in self.db.list_pending_reward_notices(season):
            try:
                await self.notifier.send_reward_notice(grant)
            except Exception:  # external delivery; retried on the next run
                logger.warning("Reward notice for player %s failed", grant.discord_id, exc_info=True)
                failed.append(str(grant.discord_id))
                continue
            self.db.mark_reward_notified(season, grant.discord_id)
            sent += 1

        if failed:
            raise SeasonActionError(
                DISTRIBUTE_REWARDS,
                (
                    f"Season {season} rewards were recorded but {len(failed)} notification(s) failed. "
                    "Run the distribution again to retry the failed notifications."
                ),
                partial=True,
                completed_steps=["record-grants", f"notified-{sent}"],
                failed=failed,
            )

        logger.info("Season %s rewards: %s qualifying, %s new, %s notified", season, len(grants), recorded, sent)
        if not season_config.reward_tiers:
            message = "No reward tiers are configured; nothing to distribute."
        else:
            message = f"Distributed season {season} rewards to {len(grants)} players ({sent} notified)."
        result = SeasonActionResult(
            action=DISTRIBUTE_REWARDS,
            message=message,
            details={
                "season": season,
                "qualifyingPlayers": len(grants),
                "newGrants": recorded,
                "notificationsSent": sent,
            },
        )
        return self._remember(idempotency_key, result)

    def reset_season_data(
        self,
        confirmation: str | None,
        *,
        idempotency_key: str | None = None,
    ) -> SeasonActionResult:
        if confirmation != RESET_CONFIRMATION:
            raise ConfirmationRequiredError(f'Type "{RESET_CONFIRMATION}" to confirm resetting all season data.')

        replayed = self._replay(RESET_SEASON_DATA, idempotency_key)
        if replayed is not None:
            return replayed

        config = self.db.get_config()
        reset_season = SeasonConfig.model_validate(
            {
                **dump_section(config.season_management),
                "currentSeason": 1,
                "seasonStartDate": None,
                "seasonEndDate": None,
            }
        )
        try:
            counts = self.db.reset_season_data(reset_season, config.mmr_system.starting_mmr)
        except sqlite3.Error as exc:
            logger.exception("Resetting season data failed")
            raise SeasonActionError(
                RESET_SEASON_DATA,
                "Failed to reset season data; no changes were made.",
            ) from exc

        logger.warning(
            "Season data reset: %s matches archived, %s players reset, %s queue entries cleared",
            counts["matchesArchived"],
            counts["playersReset"],
            counts["queueCleared"],
        )
        result = SeasonActionResult(
            action=RESET_SEASON_DATA,
            message="Season data has been reset. The league is back to season 1.",
            details={"currentSeason": 1, **counts},
        )
        return self._remember(idempotency_key, result)
