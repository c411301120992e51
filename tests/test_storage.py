from __future__ import annotations

import os
import tempfile
import unittest

from lateleague.errors import ConfigValidationError, PlayerNotFoundError, UnknownSectionError, VersionConflictError
from lateleague.storage import MAX_MMR, Database


class StorageTestCase(unittest.TestCase):
    def setUp(self) -> None:
        fd, path = tempfile.mkstemp(prefix="late-league-test-", suffix=".db")
        os.close(fd)
        self.db_path = path
        self.db = Database(path)

    def tearDown(self) -> None:
        self.db.close()
        try:
            os.remove(self.db_path)
        except FileNotFoundError:
            pass

    def _raw_payload(self, section: str) -> str:
        row = self.db.conn.execute("SELECT payload FROM bot_config WHERE section = ?", (section,)).fetchone()
        return row["payload"]


class ConfigStorageTests(StorageTestCase):
    def test_fresh_database_has_default_config(self) -> None:
        config = self.db.get_config()
        self.assertEqual(config.mmr_system.starting_mmr, 1000)
        self.assertEqual(config.season_management.current_season, 1)
        self.assertEqual(set(self.db.get_section_versions().values()), {1})

    def test_patching_one_section_leaves_others_untouched(self) -> None:
        before = {section: self._raw_payload(section) for section in ("matchmaking", "general", "seasonManagement")}
        model, version = self.db.update_config_section("mmrSystem", {"kFactor": 40})

        self.assertEqual(model.k_factor, 40)
        self.assertEqual(version, 2)
        self.assertEqual(self.db.get_config().mmr_system.k_factor, 40)
        self.assertEqual(self.db.get_config().mmr_system.starting_mmr, 1000)
        for section, payload in before.items():
            self.assertEqual(self._raw_payload(section), payload, section)
        self.assertEqual(self.db.get_section_version("matchmaking"), 1)

    def test_nested_patch_keeps_sibling_fields(self) -> None:
        self.db.update_config_section("mmrSystem", {"streakSettings": {"maxBonus": 50}})
        streak = self.db.get_config().mmr_system.streak_settings
        self.assertEqual(streak.max_bonus, 50)
        self.assertEqual(streak.threshold, 3)

    def test_invalid_patch_is_not_persisted(self) -> None:
        before = self._raw_payload("mmrSystem")
        with self.assertRaises(ConfigValidationError) as ctx:
            self.db.update_config_section("mmrSystem", {"kFactor": 100})
        self.assertEqual(ctx.exception.errors[0]["field"], "kFactor")
        self.assertEqual(self._raw_payload("mmrSystem"), before)
        self.assertEqual(self.db.get_section_version("mmrSystem"), 1)
        self.assertEqual(self.db.get_config().mmr_system.k_factor, 32)

    def test_boolean_for_integer_field_is_not_stored(self) -> None:
        with self.assertRaises(ConfigValidationError):
            self.db.update_config_section("mmrSystem", {"kFactor": True})
        self.assertEqual(self.db.get_config().mmr_system.k_factor, 32)
        self.assertEqual(self.db.get_section_version("mmrSystem"), 1)

    def test_unknown_section_is_rejected(self) -> None:
        with self.assertRaises(UnknownSectionError):
            self.db.update_config_section("themes", {"dark": True})
        with self.assertRaises(UnknownSectionError):
            self.db.get_section_version("themes")

    def test_stale_version_is_rejected(self) -> None:
        _, version = self.db.update_config_section("general", {"commandPrefix": "?"})
        with self.assertRaises(VersionConflictError) as ctx:
            self.db.update_config_section("general", {"commandPrefix": "$"}, expected_version=version - 1)
        self.assertEqual(ctx.exception.actual, version)
        self.assertEqual(self.db.get_config().general.command_prefix, "?")

        _, newer = self.db.update_config_section("general", {"commandPrefix": "$"}, expected_version=version)
        self.assertEqual(newer, version + 1)

    def test_config_survives_reopen(self) -> None:
        self.db.update_config_section("dataManagement", {"dataRetentionDays": 90})
        self.db.close()
        self.db = Database(self.db_path)
        self.assertEqual(self.db.get_config().data_management.data_retention_days, 90)
        self.assertEqual(self.db.get_section_version("dataManagement"), 2)


class PlayerStorageTests(StorageTestCase):
    def test_new_player_starts_at_configured_mmr(self) -> None:
        self.db.update_config_section("mmrSystem", {"startingMmr": 1200})
        player = self.db.upsert_player(101, "Alpha")
        self.assertEqual(player.mmr, 1200)
        self.assertEqual(player.season_id, 1)
        self.assertFalse(player.placement_matches_complete)

    def test_upsert_keeps_existing_stats(self) -> None:
        self.db.upsert_player(101, "Alpha", 1500, wins=4, losses=1)
        player = self.db.upsert_player(101, "Alpha Renamed")
        self.assertEqual(player.username, "Alpha Renamed")
        self.assertEqual(player.mmr, 1500)
        self.assertEqual((player.wins, player.losses), (4, 1))

    def test_mmr_is_clamped(self) -> None:
        self.assertEqual(self.db.upsert_player(101, "Alpha", MAX_MMR + 500).mmr, MAX_MMR)
        self.assertEqual(self.db.upsert_player(202, "Bravo", -20).mmr, 0)

    def test_unknown_player_field_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.db.upsert_player(101, "Alpha", favourite_map="Ilios")

    def test_require_player_raises_for_missing_player(self) -> None:
        self.assertIsNone(self.db.get_player(999))
        with self.assertRaises(PlayerNotFoundError):
            self.db.require_player(999)

    def test_top_players_ordered_by_mmr_and_active_only(self) -> None:
        self.db.upsert_player(1, "Low", 800)
        self.db.upsert_player(2, "High", 2400)
        self.db.upsert_player(3, "Mid", 1600)
        self.db.upsert_player(4, "Retired", 3000, is_active=False)

        top = self.db.list_top_players(10)
        self.assertEqual([player.username for player in top], ["High", "Mid", "Low"])
        self.assertEqual([player.username for player in self.db.list_top_players(2)], ["High", "Mid"])
        self.assertEqual(len(self.db.list_top_players(0)), 1)
        self.assertEqual(self.db.count_players(), 4)


class QueueAndMatchStorageTests(StorageTestCase):
    def test_enqueue_requires_known_player_and_is_idempotent(self) -> None:
        with self.assertRaises(PlayerNotFoundError):
            self.db.enqueue(101)
        self.db.upsert_player(101, "Alpha")
        self.assertTrue(self.db.enqueue(101))
        self.assertFalse(self.db.enqueue(101))
        self.assertEqual([entry.discord_id for entry in self.db.list_queue()], [101])
        self.assertEqual(self.db.clear_queue(), 1)
        self.assertEqual(self.db.list_queue(), [])

    def test_match_lifecycle(self) -> None:
        match_id = self.db.record_match({"team1": [1, 2], "team2": [3, 4]})
        self.assertTrue(self.db.finish_match(match_id, "team1"))
        self.assertFalse(self.db.finish_match(match_id + 100, "team2"))

        (match,) = self.db.list_matches()
        self.assertEqual(match.status, "completed")
        self.assertEqual(match.winning_team, "team1")
        self.assertEqual(match.season, 1)

    def test_invalid_match_status_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.db.record_match({"team1": [1]}, status="paused")


class RewardGrantStorageTests(StorageTestCase):
    def test_grants_are_unique_per_season_and_player(self) -> None:
        self.assertEqual(self.db.record_reward_grants(1, [(101, "Gold", 1600), (202, "Diamond", 2600)]), 2)
        self.assertEqual(self.db.record_reward_grants(1, [(101, "Diamond", 2700)]), 0)
        self.assertEqual(self.db.record_reward_grants(2, [(101, "Gold", 1600)]), 1)

        grants = self.db.list_reward_grants(1)
        self.assertEqual([(grant.discord_id, grant.tier_name) for grant in grants], [(202, "Diamond"), (101, "Gold")])

    def test_pending_notices_drop_after_marking(self) -> None:
        self.db.record_reward_grants(1, [(101, "Gold", 1600), (202, "Diamond", 2600)])
        self.db.mark_reward_notified(1, 202)
        self.assertEqual([grant.discord_id for grant in self.db.list_pending_reward_notices(1)], [101])


class ExportStorageTests(StorageTestCase):
    def test_dump_tables_includes_every_league_table(self) -> None:
        self.db.upsert_player(101, "Alpha", 1300)
        tables = self.db.dump_tables()
        self.assertEqual(
            set(tables),
            {"players", "queue", "matches", "match_archive", "reward_grants", "bot_config"},
        )
        self.assertEqual(tables["players"][0]["username"], "Alpha")
        self.assertEqual(len(tables["bot_config"]), 8)


if __name__ == "__main__":
    unittest.main()
