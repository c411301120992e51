"""Typed configuration sections for the league bot.

Each section is a pydantic model. Field names are snake_case in Python and
camelCase on the wire, so documents written by the dashboard validate as-is.
Bounds are enforced, never clamped: an out-of-range value is an error.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, StrictBool, StrictInt, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import ConfigValidationError, UnknownSectionError
from .ranks import duplicate_values, sort_tiers

HEX_COLOR_PATTERN = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"


def _check_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("must be an http(s) URL")
    return value


def _check_iso_date(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError("must be an ISO-8601 date") from None
    return value


def _require_number(value: Any) -> Any:
    if isinstance(value, (bool, str)):
        raise ValueError("must be a number")
    return value


# JSON ints and floats only.
Number = Annotated[float, BeforeValidator(_require_number)]


class ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class BotStatus(ConfigModel):
    activity: Literal["PLAYING", "WATCHING", "LISTENING", "COMPETING"] = "PLAYING"
    status_message: str = Field(default="Matchmaking", max_length=128)


class GeneralConfig(ConfigModel):
    bot_status: BotStatus = Field(default_factory=BotStatus)
    command_prefix: str = Field(default="!", max_length=5)
    admin_role_ids: list[str] = Field(default_factory=list)
    logging_level: Literal["debug", "info", "warn", "error"] = "info"
    error_notification_channel_id: str | None = None
    log_event_channel_id: str | None = None
    guild_id: str | None = None


class QueueSizeLimits(ConfigModel):
    min: StrictInt = Field(default=2, ge=2, le=50)
    max: StrictInt = Field(default=10, ge=2, le=50)

    @model_validator(mode="after")
    def _min_not_above_max(self) -> QueueSizeLimits:
        if self.min > self.max:
            raise ValueError("min must not exceed max")
        return self


class MatchmakingConfig(ConfigModel):
    queue_size_limits: QueueSizeLimits = Field(default_factory=QueueSizeLimits)
    auto_match_creation: StrictBool = True
    match_creation_interval_seconds: StrictInt = Field(default=30, ge=5, le=300)
    queue_timeout_minutes: StrictInt = Field(default=60, ge=1, le=240)
    min_players_per_team: StrictInt = Field(default=5, ge=1, le=10)
    team_balance_method: Literal["random", "mmr", "role"] = "mmr"
    match_announcement_format: str = Field(
        default="Match #{matchId} has been created! Teams: Team {team1} vs Team {team2}",
        max_length=1000,
    )
    post_match_results_format: str = Field(
        default="Match #{matchId} has ended! Winner: {winnerTeam}",
        max_length=1000,
    )
    auto_end_match_hours: Number = Field(default=24.0, ge=1, le=48)


class StreakSettings(ConfigModel):
    threshold: StrictInt = Field(default=3, ge=1, le=20)
    bonus_per_win: StrictInt = Field(default=5, ge=1, le=50)
    max_bonus: StrictInt = Field(default=25, ge=5, le=200)


class MmrConfig(ConfigModel):
    starting_mmr: StrictInt = Field(default=1000, ge=0, le=5000)
    k_factor: StrictInt = Field(default=32, ge=1, le=64)
    mmr_calculation_method: Literal["elo", "glicko2", "custom"] = "elo"
    placement_matches: StrictInt = Field(default=5, ge=0, le=20)
    mmr_range_restrictions: StrictBool = True
    max_mmr_difference: StrictInt = Field(default=300, ge=0, le=2000)
    streak_settings: StreakSettings = Field(default_factory=StreakSettings)


class RankTier(ConfigModel):
    name: str = Field(min_length=1)
    mmr_threshold: StrictInt = Field(ge=0)
    color: str = Field(pattern=HEX_COLOR_PATTERN)
    description: str = Field(min_length=1)
    icon: str | None = None
    image_path: str | None = None


class RewardTier(ConfigModel):
    name: str = Field(min_length=1)
    mmr_threshold: StrictInt = Field(ge=0)
    description: str


def default_rank_tiers() -> list[RankTier]:
    return [
        RankTier(name="Bronze", mmr_threshold=0, color="#B9BBBE", description="Beginning of your competitive journey"),
        RankTier(name="Silver", mmr_threshold=1000, color="#5865F2", description="Climbing the ladder"),
        RankTier(name="Gold", mmr_threshold=1500, color="#3BA55C", description="Skilled competitor"),
        RankTier(name="Platinum", mmr_threshold=2000, color="#FAA61A", description="Elite player"),
        RankTier(name="Diamond", mmr_threshold=2500, color="#ED4245", description="Top tier player"),
    ]


class SeasonConfig(ConfigModel):
    current_season: StrictInt = Field(default=1, ge=1)
    season_start_date: str | None = None
    season_end_date: str | None = None
    mmr_reset_type: Literal["full", "soft", "none"] = "soft"
    placement_match_requirements: StrictInt = Field(default=10, ge=0, le=20)
    reward_tiers: list[RewardTier] = Field(default_factory=list)
    rank_tiers: list[RankTier] = Field(default_factory=default_rank_tiers)
    enable_end_of_season_announcements: StrictBool = True

    @field_validator("season_start_date", "season_end_date")
    @classmethod
    def _iso_dates(cls, value: str | None) -> str | None:
        return _check_iso_date(value)

    @field_validator("rank_tiers")
    @classmethod
    def _sorted_unique_rank_tiers(cls, tiers: list[RankTier]) -> list[RankTier]:
        names = duplicate_values(tiers, "name")
        if names:
            raise ValueError(f"duplicate rank tier name(s): {', '.join(map(str, names))}")
        thresholds = duplicate_values(tiers, "mmr_threshold")
        if thresholds:
            raise ValueError(f"duplicate rank tier threshold(s): {', '.join(map(str, thresholds))}")
        return sort_tiers(tiers)

    @field_validator("reward_tiers")
    @classmethod
    def _sorted_unique_reward_tiers(cls, tiers: list[RewardTier]) -> list[RewardTier]:
        thresholds = duplicate_values(tiers, "mmr_threshold")
        if thresholds:
            raise ValueError(f"duplicate reward tier threshold(s): {', '.join(map(str, thresholds))}")
        return sort_tiers(tiers)

    @model_validator(mode="after")
    def _end_after_start(self) -> SeasonConfig:
        if self.season_start_date and self.season_end_date:
            start = datetime.fromisoformat(self.season_start_date.replace("Z", "+00:00"))
            end = datetime.fromisoformat(self.season_end_date.replace("Z", "+00:00"))
            if start.tzinfo is None or end.tzinfo is None:
                start = start.replace(tzinfo=None)
                end = end.replace(tzinfo=None)
            if end < start:
                raise ValueError("seasonEndDate must not be before seasonStartDate")
        return self


class VoteSystemSettings(ConfigModel):
    majority_percent: Number = Field(default=75.0, ge=50, le=100)
    min_votes_needed: StrictInt = Field(default=3, ge=1)


class MatchRulesConfig(ConfigModel):
    vote_system_settings: VoteSystemSettings = Field(default_factory=VoteSystemSettings)
    match_time_limit_hours: Number = Field(default=2.0, ge=0.5, le=48)
    enable_forfeit: StrictBool = True
    no_show_timeout_minutes: StrictInt = Field(default=10, ge=1, le=30)
    min_players_to_start: StrictInt = Field(default=4, ge=1)
    allow_substitutes: StrictBool = True


class DmNotifications(ConfigModel):
    match_created: StrictBool = True
    match_reminder: StrictBool = True
    match_ended: StrictBool = True
    queue_timeout: StrictBool = True


class ChannelNotifications(ConfigModel):
    match_created: StrictBool = True
    match_ended: StrictBool = True
    queue_status: StrictBool = True


class NotificationConfig(ConfigModel):
    match_reminders: StrictBool = True
    reminder_minutes_before: StrictInt = Field(default=5, ge=1, le=60)
    dm_notifications: DmNotifications = Field(default_factory=DmNotifications)
    channel_notifications: ChannelNotifications = Field(default_factory=ChannelNotifications)
    enable_role_mentions: StrictBool = True
    announcement_channel_id: str | None = None


class IntegrationConfig(ConfigModel):
    discord_server_url: str | None = None
    api_keys: dict[str, str] = Field(default_factory=dict)
    webhook_urls: dict[str, str] = Field(default_factory=dict)
    enable_oauth2: StrictBool = Field(default=False, alias="enableOAuth2")
    oauth2_settings: dict[str, str] = Field(default_factory=dict)
    external_platform_integrations: list[Literal["steam", "faceit", "battlenet", "epic"]] = Field(
        default_factory=list
    )

    @field_validator("discord_server_url")
    @classmethod
    def _server_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _check_url(value)

    @field_validator("webhook_urls")
    @classmethod
    def _webhook_urls(cls, value: dict[str, str]) -> dict[str, str]:
        for name, url in value.items():
            try:
                _check_url(url)
            except ValueError:
                raise ValueError(f"webhook {name!r} must be an http(s) URL") from None
        return value


class DataManagementConfig(ConfigModel):
    enable_data_exports: StrictBool = True
    data_retention_days: StrictInt = Field(default=365, ge=30, le=3650)
    backup_schedule: Literal["daily", "weekly", "monthly", "never"] = "weekly"
    enable_data_import: StrictBool = False


SECTION_MODELS: dict[str, type[ConfigModel]] = {
    "general": GeneralConfig,
    "matchmaking": MatchmakingConfig,
    "mmrSystem": MmrConfig,
    "seasonManagement": SeasonConfig,
    "matchRules": MatchRulesConfig,
    "notifications": NotificationConfig,
    "integrations": IntegrationConfig,
    "dataManagement": DataManagementConfig,
}
SECTION_NAMES = tuple(SECTION_MODELS)


class BotConfig(ConfigModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    matchmaking: MatchmakingConfig = Field(default_factory=MatchmakingConfig)
    mmr_system: MmrConfig = Field(default_factory=MmrConfig)
    season_management: SeasonConfig = Field(default_factory=SeasonConfig)
    match_rules: MatchRulesConfig = Field(default_factory=MatchRulesConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    integrations: IntegrationConfig = Field(default_factory=IntegrationConfig)
    data_management: DataManagementConfig = Field(default_factory=DataManagementConfig)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> BotConfig:
        return cls.model_validate(document)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def section_document(self, section: str) -> dict[str, Any]:
        return self.to_document()[section]


def dump_section(model: ConfigModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _format_errors(exc: ValidationError) -> list[dict[str, str]]:
    errors: list[dict[str, str]] = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"])
        errors.append({"field": field, "message": error["msg"]})
    return errors


def validate_section(section: str, payload: Any) -> ConfigModel:
    model = SECTION_MODELS.get(section)
    if model is None:
        raise UnknownSectionError(section)
    if not isinstance(payload, dict):
        raise ConfigValidationError(section, [{"field": "", "message": "Section payload must be a JSON object"}])
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ConfigValidationError(section, _format_errors(exc)) from exc


def merge_section(current: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge ``patch`` onto ``current``: objects merge, anything else replaces."""
    merged = dict(current)
    for key, value in patch.items():
        existing = merged.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            merged[key] = merge_section(existing, value)
        else:
            merged[key] = value
    return merged
