from dataclasses import dataclass
import logging
import os

from dotenv import load_dotenv


@dataclass(frozen=True, slots=True)
class Settings:
    discord_token: str | None
    command_guild_id: int | None
    database_path: str
    database_url: str | None
    api_host: str
    api_port: int
    admin_api_tokens: tuple[str, ...]
    export_command: str | None
    log_level: int

    @property
    def bot_enabled(self) -> bool:
        return bool(self.discord_token)


def _optional_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer.") from None


def load_settings() -> Settings:
    load_dotenv()

    token = os.getenv("DISCORD_TOKEN", "").strip() or None
    command_guild_id = _optional_int("COMMAND_GUILD_ID")

    database_path = os.getenv("SQLITE_PATH", "league.db").strip() or "league.db"
    database_url = os.getenv("DATABASE_URL", "").strip() or None

    api_host = os.getenv("API_HOST", "0.0.0.0").strip() or "0.0.0.0"
    api_port = _optional_int("API_PORT") or 5000
    if not 1 <= api_port <= 65535:
        raise RuntimeError("API_PORT must be between 1 and 65535.")

    admin_api_tokens = tuple(
        token_value.strip()
        for token_value in os.getenv("ADMIN_API_TOKENS", "").split(",")
        if token_value.strip()
    )

    export_command = os.getenv("EXPORT_COMMAND", "").strip() or None

    level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        raise RuntimeError(f"LOG_LEVEL {level_name!r} is not a logging level.")

    return Settings(
        discord_token=token,
        command_guild_id=command_guild_id,
        database_path=database_path,
        database_url=database_url,
        api_host=api_host,
        api_port=api_port,
        admin_api_tokens=admin_api_tokens,
        export_command=export_command,
        log_level=log_level,
    )
