"""REST API consumed by the admin dashboard.

Public routes expose the configuration document and leaderboard data. Admin
routes (config edits, season actions, database export) require a bearer token
listed in ``ADMIN_API_TOKENS``.
"""

from __future__ import annotations

import functools
import hmac
import json
import logging
from typing import Any, Awaitable, Callable

import aiohttp.web

from .errors import (
    ConfigValidationError,
    ConfirmationRequiredError,
    ExportError,
    PlayerNotFoundError,
    SeasonActionError,
    UnknownSectionError,
    VersionConflictError,
)
from .export import CommandExporter, JsonExporter, export_filename
from .models import Player
from .ranks import progress_to_next_tier, resolve_tier, tier_label
from .schema import SECTION_MODELS, RankTier
from .seasons import SeasonService
from .storage import Database, utc_now_iso

logger = logging.getLogger("late-league.api")

Handler = Callable[[aiohttp.web.Request], Awaitable[aiohttp.web.StreamResponse]]


def json_error(status: int, message: str, **extra: Any) -> aiohttp.web.Response:
    return aiohttp.web.json_response({"message": message, **extra}, status=status)


def section_etag(section: str, version: int) -> str:
    return f'"{section}-{version}"'


def parse_if_match(section: str, header: str | None) -> int | None:
    if header is None:
        return None
    value = header.strip()
    if value.startswith("W/"):
        value = value[2:]
    value = value.strip('"')
    prefix = f"{section}-"
    if value.startswith(prefix):
        value = value[len(prefix):]
    try:
        return int(value)
    except ValueError:
        raise aiohttp.web.HTTPBadRequest(
            text=json.dumps({"message": f"Malformed If-Match header: {header}"}),
            content_type="application/json",
        ) from None


def player_payload(player: Player, tiers: list[RankTier], position: int | None = None) -> dict[str, Any]:
    tier = resolve_tier(player.mmr, tiers)
    payload = player.to_dict()
    payload["rank"] = tier_label(tier)
    payload["rankColor"] = tier.color if tier is not None else None
    payload["rankIcon"] = tier.icon if tier is not None else None
    payload["rankProgress"] = progress_to_next_tier(player.mmr, tiers)
    payload["winRate"] = round(player.win_rate * 100, 1)
    if position is not None:
        payload["position"] = position
    return payload


@aiohttp.web.middleware
async def error_middleware(request: aiohttp.web.Request, handler: Handler) -> aiohttp.web.StreamResponse:
    try:
        return await handler(request)
    except aiohttp.web.HTTPException:
        raise
    except ConfigValidationError as exc:
        return json_error(400, str(exc), section=exc.section, errors=exc.errors)
    except (UnknownSectionError, PlayerNotFoundError) as exc:
        return json_error(404, str(exc))
    except VersionConflictError as exc:
        return json_error(
            409,
            str(exc),
            section=exc.section,
            currentVersion=exc.actual,
            etag=section_etag(exc.section, exc.actual),
        )
    except ConfirmationRequiredError as exc:
        return json_error(400, str(exc))
    except ExportError as exc:
        logger.error("Database export failed: %s", exc)
        return json_error(503, str(exc))
    except SeasonActionError as exc:
        return json_error(
            500,
            str(exc),
            action=exc.action,
            status="partial" if exc.partial else "failed",
            completedSteps=exc.completed_steps,
            failed=exc.failed,
        )
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return json_error(500, "Internal server error")


def admin_only(
    handler: Callable[[LeagueApi, aiohttp.web.Request], Awaitable[aiohttp.web.StreamResponse]],
) -> Callable[[LeagueApi, aiohttp.web.Request], Awaitable[aiohttp.web.StreamResponse]]:
    @functools.wraps(handler)
    async def wrapper(self: LeagueApi, request: aiohttp.web.Request) -> aiohttp.web.StreamResponse:
        self.check_admin(request)
        return await handler(self, request)

    return wrapper


class LeagueApi:
    def __init__(
        self,
        db: Database,
        seasons: SeasonService,
        *,
        admin_tokens: tuple[str, ...] = (),
        exporter: JsonExporter | CommandExporter | None = None,
    ) -> None:
        self.db = db
        self.seasons = seasons
        self.admin_tokens = admin_tokens
        self.exporter = exporter or JsonExporter(db)
        if not admin_tokens:
            logger.warning("ADMIN_API_TOKENS is empty; admin routes will reject every request")

        self.app = aiohttp.web.Application(middlewares=[error_middleware])
        for route in self.routes():
            self.app.router.add_route(*route)

    def routes(self) -> list[tuple[str, str, Handler]]:
        return [
            ("GET", "/api/health", self.health),
            ("GET", "/api/config", self.get_config),
            ("GET", "/api/config/{section}", self.get_config_section),
            ("PATCH", "/api/config/{section}", self.patch_config_section),
            ("GET", "/api/players/top", self.top_players),
            ("GET", r"/api/players/{discord_id:\d+}", self.get_player),
            ("POST", "/api/admin/seasons/new", self.start_new_season),
            ("POST", "/api/admin/seasons/distribute-rewards", self.distribute_rewards),
            ("POST", "/api/admin/seasons/reset-data", self.reset_season_data),
            ("GET", "/api/admin/export-database", self.export_database),
        ]

    def check_admin(self, request: aiohttp.web.Request) -> None:
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        token = token.strip()
        if scheme.lower() == "bearer" and token:
            for allowed in self.admin_tokens:
                if hmac.compare_digest(token.encode(), allowed.encode()):
                    return
        logger.warning("Rejected admin request to %s from %s", request.path, request.remote)
        raise aiohttp.web.HTTPUnauthorized(
            text=json.dumps({"authenticated": False, "message": "Authentication required"}),
            content_type="application/json",
        )

    async def _read_json(self, request: aiohttp.web.Request, *, default: Any = None) -> Any:
        if not request.body_exists:
            return default
        try:
            return await request.json()
        except ValueError:
            raise aiohttp.web.HTTPBadRequest(
                text=json.dumps({"message": "Request body is not valid JSON"}),
                content_type="application/json",
            ) from None

    async def health(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        return aiohttp.web.json_response({"status": "ok", "timestamp": utc_now_iso()})

    async def get_config(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        return aiohttp.web.json_response(self.db.get_config().to_document())

    async def get_config_section(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        section = request.match_info["section"]
        if section not in SECTION_MODELS:
            raise UnknownSectionError(section)
        response = aiohttp.web.json_response(self.db.get_config().section_document(section))
        response.headers["ETag"] = section_etag(section, self.db.get_section_version(section))
        return response

    @admin_only
    async def patch_config_section(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        section = request.match_info["section"]
        if section not in SECTION_MODELS:
            raise UnknownSectionError(section)
        expected_version = parse_if_match(section, request.headers.get("If-Match"))
        payload = await self._read_json(request)
        if not isinstance(payload, dict):
            raise ConfigValidationError(section, [{"field": "", "message": "Section payload must be a JSON object"}])

        _, version = self.db.update_config_section(section, payload, expected_version=expected_version)
        response = aiohttp.web.json_response(self.db.get_config().section_document(section))
        response.headers["ETag"] = section_etag(section, version)
        return response

    async def top_players(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        raw_limit = request.query.get("limit", "10")
        try:
            limit = int(raw_limit)
        except ValueError:
            return json_error(400, f"limit must be an integer, got {raw_limit!r}")
        if limit < 1:
            return json_error(400, "limit must be at least 1")

        tiers = self.db.get_config().season_management.rank_tiers
        players = self.db.list_top_players(limit)
        return aiohttp.web.json_response(
            [player_payload(player, tiers, position) for position, player in enumerate(players, start=1)]
        )

    async def get_player(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        player = self.db.require_player(int(request.match_info["discord_id"]))
        tiers = self.db.get_config().season_management.rank_tiers
        return aiohttp.web.json_response(player_payload(player, tiers))

    @admin_only
    async def start_new_season(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        result = self.seasons.start_new_season(idempotency_key=request.headers.get("Idempotency-Key"))
        return aiohttp.web.json_response(result.to_dict())

    @admin_only
    async def distribute_rewards(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        result = await self.seasons.distribute_rewards(idempotency_key=request.headers.get("Idempotency-Key"))
        return aiohttp.web.json_response(result.to_dict())

    @admin_only
    async def reset_season_data(self, request: aiohttp.web.Request) -> aiohttp.web.Response:
        body = await self._read_json(request, default={})
        confirmation = body.get("confirmation") if isinstance(body, dict) else None
        result = self.seasons.reset_season_data(
            confirmation,
            idempotency_key=request.headers.get("Idempotency-Key"),
        )
        return aiohttp.web.json_response(result.to_dict())

    @admin_only
    async def export_database(self, request: aiohttp.web.Request) -> aiohttp.web.StreamResponse:
        if not self.db.get_config().data_management.enable_data_exports:
            return json_error(403, "Data exports are disabled in the dataManagement configuration.")

        chunks = self.exporter.stream()
        # Startup failures of the exporter must surface before the headers go out.
        try:
            first = await anext(chunks)
        except StopAsyncIteration:
            first = b""

        filename = export_filename(self.exporter.extension)
        response = aiohttp.web.StreamResponse(
            headers={
                "Content-Type": self.exporter.content_type,
                "Content-Disposition": f'attachment; filename="{filename}"',
            }
        )
        try:
            await response.prepare(request)
            await response.write(first)
            async for chunk in chunks:
                await response.write(chunk)
        except ExportError as exc:
            # Headers are gone already; mark the file as broken instead.
            logger.error("Export failed after the download started: %s", exc)
            await response.write(f"\n-- EXPORT FAILED: {exc}\n".encode("utf-8"))
        finally:
            # Stops the dump tool when the client goes away mid-download.
            await chunks.aclose()
        await response.write_eof()
        logger.info("Database export %s sent to %s", filename, request.remote)
        return response
