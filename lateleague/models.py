from dataclasses import dataclass


@dataclass(slots=True)
class Player:
    discord_id: int
    username: str
    mmr: int
    wins: int = 0
    losses: int = 0
    win_streak: int = 0
    loss_streak: int = 0
    placement_matches_played: int = 0
    placement_matches_complete: bool = False
    season_id: int = 1
    is_active: bool = True

    @property
    def games_played(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> float:
        if self.games_played == 0:
            return 0.0
        return self.wins / self.games_played

    def to_dict(self) -> dict[str, object]:
        return {
            "discordId": str(self.discord_id),
            "username": self.username,
            "mmr": self.mmr,
            "wins": self.wins,
            "losses": self.losses,
            "winStreak": self.win_streak,
            "lossStreak": self.loss_streak,
            "placementMatchesPlayed": self.placement_matches_played,
            "placementMatchesComplete": self.placement_matches_complete,
            "seasonId": self.season_id,
            "isActive": self.is_active,
        }


@dataclass(slots=True)
class QueuedPlayer:
    discord_id: int
    username: str
    mmr: int
    joined_at: str


@dataclass(slots=True)
class MatchRecord:
    match_id: int
    season: int
    status: str  # "active" | "completed" | "cancelled"
    created_at: str
    finished_at: str | None
    winning_team: str | None
    teams_json: str


@dataclass(slots=True)
class RewardGrant:
    season: int
    discord_id: int
    tier_name: str
    mmr: int
    granted_at: str
    notified_at: str | None


@dataclass(slots=True)
class SeasonActionResult:
    action: str
    message: str
    details: dict[str, object]

    def to_dict(self) -> dict[str, object]:
        return {"message": self.message, **self.details}
