from __future__ import annotations

import json
import os
import tempfile
from unittest import mock

import aiohttp.web
from aiohttp.test_utils import AioHTTPTestCase, make_mocked_request

from lateleague.api import LeagueApi, parse_if_match
from lateleague.export import CommandExporter
from lateleague.models import RewardGrant
from lateleague.seasons import SeasonService
from lateleague.storage import Database

ADMIN_TOKEN = "test-admin-token"
AUTH = {"Authorization": f"Bearer {ADMIN_TOKEN}"}


class TrackedExporter:
    extension = "sql"
    content_type = "application/sql"

    def __init__(self) -> None:
        self.closed = False

    async def stream(self):
        try:
            yield b"-- part one\n"
            yield b"-- part two\n"
        finally:
            self.closed = True


async def _disconnected_write(self: aiohttp.web.StreamResponse, data: bytes) -> None:
    raise ConnectionResetError("client went away")


class FailingNotifier:
    async def send_reward_notice(self, grant: RewardGrant) -> None:
        raise ConnectionError("DMs are closed")


class LeagueApiTestCase(AioHTTPTestCase):
    async def get_application(self) -> aiohttp.web.Application:
        fd, path = tempfile.mkstemp(prefix="late-league-test-", suffix=".db")
        os.close(fd)
        self.db_path = path
        self.db = Database(path)
        self.api = LeagueApi(self.db, SeasonService(self.db), admin_tokens=(ADMIN_TOKEN,))
        return self.api.app

    async def asyncTearDown(self) -> None:
        await super().asyncTearDown()
        self.db.close()
        try:
            os.remove(self.db_path)
        except FileNotFoundError:
            pass


class PublicRouteTests(LeagueApiTestCase):
    async def test_health(self) -> None:
        resp = await self.client.get("/api/health")
        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["status"], "ok")

    async def test_full_config_has_every_section(self) -> None:
        resp = await self.client.get("/api/config")
        body = await resp.json()
        self.assertEqual(resp.status, 200)
        self.assertEqual(
            set(body),
            {
                "general",
                "matchmaking",
                "mmrSystem",
                "seasonManagement",
                "matchRules",
                "notifications",
                "integrations",
                "dataManagement",
            },
        )
        self.assertEqual(body["mmrSystem"]["kFactor"], 32)

    async def test_section_carries_etag(self) -> None:
        resp = await self.client.get("/api/config/mmrSystem")
        self.assertEqual(resp.status, 200)
        self.assertEqual(resp.headers["ETag"], '"mmrSystem-1"')

    async def test_unknown_section_is_404(self) -> None:
        resp = await self.client.get("/api/config/themes")
        self.assertEqual(resp.status, 404)
        self.assertIn("themes", (await resp.json())["message"])

    async def test_top_players_include_rank(self) -> None:
        self.db.upsert_player(101, "Alpha", 1600, wins=3, losses=1)
        self.db.upsert_player(202, "Bravo", 900)

        resp = await self.client.get("/api/players/top", params={"limit": "5"})
        body = await resp.json()
        self.assertEqual(resp.status, 200)
        self.assertEqual([entry["discordId"] for entry in body], ["101", "202"])
        self.assertEqual(body[0]["rank"], "Gold")
        self.assertEqual(body[0]["position"], 1)
        self.assertEqual(body[0]["winRate"], 75.0)
        self.assertEqual(body[1]["rank"], "Bronze")

    async def test_top_players_rejects_bad_limit(self) -> None:
        self.assertEqual((await self.client.get("/api/players/top?limit=abc")).status, 400)
        self.assertEqual((await self.client.get("/api/players/top?limit=0")).status, 400)

    async def test_unknown_player_is_404(self) -> None:
        resp = await self.client.get("/api/players/999")
        self.assertEqual(resp.status, 404)

    async def test_player_lookup(self) -> None:
        self.db.upsert_player(101, "Alpha", 2600)
        body = await (await self.client.get("/api/players/101")).json()
        self.assertEqual(body["username"], "Alpha")
        self.assertEqual(body["rank"], "Diamond")
        self.assertEqual(body["rankProgress"], 100)


class ConfigPatchTests(LeagueApiTestCase):
    async def test_patch_requires_admin_token(self) -> None:
        resp = await self.client.patch("/api/config/mmrSystem", json={"kFactor": 40})
        self.assertEqual(resp.status, 401)
        self.assertFalse((await resp.json())["authenticated"])

        resp = await self.client.patch(
            "/api/config/mmrSystem",
            json={"kFactor": 40},
            headers={"Authorization": "Bearer wrong"},
        )
        self.assertEqual(resp.status, 401)
        self.assertEqual(self.db.get_config().mmr_system.k_factor, 32)

    async def test_patch_validation_errors_are_400(self) -> None:
        resp = await self.client.patch("/api/config/mmrSystem", json={"kFactor": 100}, headers=AUTH)
        body = await resp.json()
        self.assertEqual(resp.status, 400)
        self.assertEqual(body["section"], "mmrSystem")
        self.assertEqual([error["field"] for error in body["errors"]], ["kFactor"])
        self.assertEqual(self.db.get_config().mmr_system.k_factor, 32)

    async def test_patch_updates_section_and_bumps_etag(self) -> None:
        before = (await (await self.client.get("/api/config")).json())["matchmaking"]

        resp = await self.client.patch("/api/config/mmrSystem", json={"kFactor": 40}, headers=AUTH)
        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["kFactor"], 40)
        self.assertEqual(resp.headers["ETag"], '"mmrSystem-2"')

        after = (await (await self.client.get("/api/config")).json())["matchmaking"]
        self.assertEqual(json.dumps(after), json.dumps(before))

    async def test_stale_if_match_is_409(self) -> None:
        await self.client.patch("/api/config/general", json={"commandPrefix": "?"}, headers=AUTH)
        resp = await self.client.patch(
            "/api/config/general",
            json={"commandPrefix": "$"},
            headers={**AUTH, "If-Match": '"general-1"'},
        )
        body = await resp.json()
        self.assertEqual(resp.status, 409)
        self.assertEqual(body["currentVersion"], 2)
        self.assertEqual(self.db.get_config().general.command_prefix, "?")

    async def test_malformed_body_is_400(self) -> None:
        resp = await self.client.patch(
            "/api/config/general",
            data="{not json",
            headers={**AUTH, "Content-Type": "application/json"},
        )
        self.assertEqual(resp.status, 400)

    async def test_duplicate_reward_thresholds_are_400(self) -> None:
        tiers = [
            {"name": "A", "mmrThreshold": 1500, "description": "a"},
            {"name": "B", "mmrThreshold": 1500, "description": "b"},
        ]
        resp = await self.client.patch("/api/config/seasonManagement", json={"rewardTiers": tiers}, headers=AUTH)
        self.assertEqual(resp.status, 400)

    def test_parse_if_match_accepts_weak_and_bare_versions(self) -> None:
        self.assertEqual(parse_if_match("general", 'W/"general-4"'), 4)
        self.assertEqual(parse_if_match("general", "7"), 7)
        self.assertIsNone(parse_if_match("general", None))


class SeasonRouteTests(LeagueApiTestCase):
    async def test_season_routes_require_admin(self) -> None:
        for path in ("/api/admin/seasons/new", "/api/admin/seasons/distribute-rewards", "/api/admin/seasons/reset-data"):
            self.assertEqual((await self.client.post(path)).status, 401, path)

    async def test_start_new_season(self) -> None:
        resp = await self.client.post("/api/admin/seasons/new", headers=AUTH)
        body = await resp.json()
        self.assertEqual(resp.status, 200)
        self.assertEqual(body["currentSeason"], 2)
        self.assertIn("Season 2", body["message"])

    async def test_idempotency_key_header_replays_season_start(self) -> None:
        headers = {**AUTH, "Idempotency-Key": "new-season-1"}
        first = await (await self.client.post("/api/admin/seasons/new", headers=headers)).json()
        resp = await self.client.post("/api/admin/seasons/new", headers=headers)
        second = await resp.json()

        self.assertEqual(resp.status, 200)
        self.assertTrue(second["replayed"])
        self.assertNotIn("replayed", first)
        self.assertEqual(second["currentSeason"], 2)
        self.assertEqual(self.db.get_config().season_management.current_season, 2)

    async def test_reset_without_confirmation_is_400(self) -> None:
        self.db.update_config_section("seasonManagement", {"currentSeason": 3})
        resp = await self.client.post("/api/admin/seasons/reset-data", json={"confirmation": "yes"}, headers=AUTH)
        self.assertEqual(resp.status, 400)
        self.assertEqual(self.db.get_config().season_management.current_season, 3)

        resp = await self.client.post("/api/admin/seasons/reset-data", json={"confirmation": "RESET"}, headers=AUTH)
        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["currentSeason"], 1)

    async def test_partial_reward_failure_is_reported(self) -> None:
        self.api.seasons.notifier = FailingNotifier()
        self.db.update_config_section(
            "seasonManagement",
            {"rewardTiers": [{"name": "Gold Reward", "mmrThreshold": 1500, "description": "Gold"}]},
        )
        self.db.upsert_player(101, "Alpha", 1700)

        resp = await self.client.post("/api/admin/seasons/distribute-rewards", headers=AUTH)
        body = await resp.json()
        self.assertEqual(resp.status, 500)
        self.assertEqual(body["status"], "partial")
        self.assertEqual(body["failed"], ["101"])
        self.assertIn("record-grants", body["completedSteps"])
        self.assertEqual(len(self.db.list_reward_grants(1)), 1)


class ExportRouteTests(LeagueApiTestCase):
    async def test_export_requires_admin(self) -> None:
        self.assertEqual((await self.client.get("/api/admin/export-database")).status, 401)

    async def test_json_export_is_an_attachment(self) -> None:
        self.db.upsert_player(101, "Alpha", 1200)
        resp = await self.client.get("/api/admin/export-database", headers=AUTH)
        self.assertEqual(resp.status, 200)
        self.assertIn("attachment", resp.headers["Content-Disposition"])
        self.assertIn(".json", resp.headers["Content-Disposition"])

        body = json.loads(await resp.read())
        self.assertEqual(body["players"][0]["username"], "Alpha")
        self.assertIn("exportDate", body)
        self.assertEqual(body["config"]["mmrSystem"]["startingMmr"], 1000)

    async def test_export_disabled_is_403(self) -> None:
        self.db.update_config_section("dataManagement", {"enableDataExports": False})
        resp = await self.client.get("/api/admin/export-database", headers=AUTH)
        self.assertEqual(resp.status, 403)

    async def test_missing_export_tool_is_503(self) -> None:
        self.api.exporter = CommandExporter("definitely-not-a-real-dump-tool {db}", self.db_path)
        resp = await self.client.get("/api/admin/export-database", headers=AUTH)
        self.assertEqual(resp.status, 503)
        self.assertIn("definitely-not-a-real-dump-tool", (await resp.json())["message"])

    async def test_client_disconnect_closes_export_stream(self) -> None:
        exporter = TrackedExporter()
        self.api.exporter = exporter
        request = make_mocked_request("GET", "/api/admin/export-database", headers=AUTH, app=self.app)

        with mock.patch.object(aiohttp.web.StreamResponse, "write", _disconnected_write):
            with self.assertRaises(ConnectionResetError):
                await self.api.export_database(request)

        self.assertTrue(exporter.closed)
