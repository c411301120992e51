from __future__ import annotations

import logging
import math

import discord
from discord import app_commands
from discord.ext import commands

from .config import Settings
from .models import Player, RewardGrant
from .ranks import progress_to_next_tier, resolve_tier, tier_label
from .schema import RankTier
from .storage import Database

logger = logging.getLogger("late-league.bot")

PLAYERS_PER_PAGE = 10
LEADERBOARD_FETCH_LIMIT = 100
EMBED_COLOR = 0x5865F2


def _parse_color(value: str | None) -> discord.Color:
    if not value:
        return discord.Color(EMBED_COLOR)
    digits = value.lstrip("#")
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return discord.Color(int(digits, 16))


def _format_leaderboard_line(position: int, player: Player, tiers: list[RankTier]) -> str:
    tier = resolve_tier(player.mmr, tiers)
    win_rate = f"{player.win_rate * 100:.1f}"
    return (
        f"**#{position} {player.username}** | {tier_label(tier)} | MMR `{player.mmr}` | "
        f"W/L `{player.wins}/{player.losses}` ({win_rate}%)"
    )


def build_leaderboard_embed(players: list[Player], tiers: list[RankTier], page: int) -> discord.Embed:
    total_pages = max(1, math.ceil(len(players) / PLAYERS_PER_PAGE))
    page = max(1, min(page, total_pages))
    start = (page - 1) * PLAYERS_PER_PAGE
    selected = players[start : start + PLAYERS_PER_PAGE]

    embed = discord.Embed(
        title="Player Leaderboard",
        description=f"Players ranked by MMR (page {page}/{total_pages})",
        color=discord.Color(EMBED_COLOR),
    )
    if selected:
        lines = [
            _format_leaderboard_line(start + offset + 1, player, tiers)
            for offset, player in enumerate(selected)
        ]
        embed.add_field(name="Standings", value="\n".join(lines), inline=False)
    else:
        embed.add_field(name="Standings", value="No ranked players yet.", inline=False)
    embed.set_footer(text=f"Total players: {len(players)}")
    return embed


def build_rank_embed(player: Player, tiers: list[RankTier], season: int) -> discord.Embed:
    tier = resolve_tier(player.mmr, tiers)
    embed = discord.Embed(
        title=f"{player.username} - Season {season}",
        color=_parse_color(tier.color if tier else None),
    )
    embed.add_field(name="Rank", value=tier_label(tier), inline=True)
    embed.add_field(name="MMR", value=str(player.mmr), inline=True)
    embed.add_field(name="Progress", value=f"{progress_to_next_tier(player.mmr, tiers)}%", inline=True)
    embed.add_field(name="W/L", value=f"{player.wins}/{player.losses}", inline=True)
    embed.add_field(name="Streak", value=f"W{player.win_streak} / L{player.loss_streak}", inline=True)
    if not player.placement_matches_complete:
        embed.set_footer(text=f"Placement matches played: {player.placement_matches_played}")
    return embed


class DiscordNotifier:
    def __init__(self, client: discord.Client) -> None:
        self.client = client

    async def send_reward_notice(self, grant: RewardGrant) -> None:
        user = self.client.get_user(grant.discord_id) or await self.client.fetch_user(grant.discord_id)
        await user.send(
            f"Season {grant.season} has wrapped up! You finished at **{grant.mmr} MMR** "
            f"and earned the **{grant.tier_name}** reward tier."
        )


class LeagueBot(commands.Bot):
    def __init__(self, settings: Settings, db: Database) -> None:
        intents = discord.Intents.default()
        super().__init__(command_prefix=db.get_config().general.command_prefix, intents=intents)
        self.settings = settings
        self.db = db

    async def setup_hook(self) -> None:
        register_commands(self)
        if self.settings.command_guild_id:
            guild = discord.Object(id=self.settings.command_guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
            logger.info("Synced commands to guild %s", self.settings.command_guild_id)
        else:
            await self.tree.sync()
            logger.info("Synced global commands")

    async def on_ready(self) -> None:
        if self.user:
            logger.info("Connected as %s (%s)", self.user.name, self.user.id)
        status = self.db.get_config().general.bot_status
        activity_type = {
            "PLAYING": discord.ActivityType.playing,
            "WATCHING": discord.ActivityType.watching,
            "LISTENING": discord.ActivityType.listening,
            "COMPETING": discord.ActivityType.competing,
        }[status.activity]
        await self.change_presence(activity=discord.Activity(type=activity_type, name=status.status_message))


def register_commands(bot: LeagueBot) -> None:
    @bot.tree.command(name="leaderboard", description="View the ranked leaderboard.")
    @app_commands.describe(page="Page number to view")
    async def leaderboard(interaction: discord.Interaction, page: int = 1) -> None:
        config = bot.db.get_config()
        players = bot.db.list_top_players(LEADERBOARD_FETCH_LIMIT)
        embed = build_leaderboard_embed(players, config.season_management.rank_tiers, page)
        await interaction.response.send_message(embed=embed)

    @bot.tree.command(name="rank", description="Show a player's rank, MMR and record.")
    @app_commands.describe(player="Player to look up (defaults to you)")
    async def rank(interaction: discord.Interaction, player: discord.Member | None = None) -> None:
        target = player or interaction.user
        record = bot.db.get_player(target.id)
        if record is None:
            await interaction.response.send_message(
                f"{target.mention} has not played any league matches yet.",
                ephemeral=True,
            )
            return
        season = bot.db.get_config().season_management
        await interaction.response.send_message(embed=build_rank_embed(record, season.rank_tiers, season.current_season))

    @bot.tree.command(name="season", description="Show the current season.")
    async def season(interaction: discord.Interaction) -> None:
        config = bot.db.get_config().season_management
        lines = [f"**Season {config.current_season}**"]
        if config.season_start_date:
            lines.append(f"Started: `{config.season_start_date[:10]}`")
        if config.season_end_date:
            lines.append(f"Ends: `{config.season_end_date[:10]}`")
        lines.append(f"MMR reset at season end: `{config.mmr_reset_type}`")
        await interaction.response.send_message("\n".join(lines), ephemeral=True)
