#!/usr/bin/env python3

from __future__ import annotations

import random
import unittest

from packages.lantern_core.sim.missions import (
    MISSION_CHAIN,
    MissionEvent,
    MissionProgress,
    QuestSignals,
    TownMission,
    apply_event,
    apply_town_event,
    grant_completion,
    mission_view,
    normalize_dynamic_mission,
    normalize_town_mission,
)
from packages.lantern_core.sim.world import PlayerSession, create_world


class MissionChainTests(unittest.TestCase):
    def test_chain_starts_at_forest_shrine(self) -> None:
        progress = MissionProgress()
        self.assertEqual(progress.current().id, "shrine_light")
        miss = apply_event(progress, MissionEvent(kind="move", x=900.0, y=200.0, area="Housing"))
        self.assertFalse(miss.changed)
        hit = apply_event(progress, MissionEvent(kind="move", x=310.0, y=930.0, area="Forest"))
        self.assertTrue(hit.changed)
        self.assertEqual(hit.completed.id, "shrine_light")
        self.assertEqual(hit.next_mission.id, "herbal_counsel")

    def test_scoped_counters_reset_on_advance(self) -> None:
        progress = MissionProgress(index=4)
        self.assertEqual(progress.current().id, "first_harvest")
        first = apply_event(progress, MissionEvent(kind="harvest"))
        self.assertTrue(first.changed)
        self.assertIsNone(first.completed)
        self.assertEqual(progress.harvest_count, 1)
        done = apply_event(progress, MissionEvent(kind="harvest"))
        self.assertEqual(done.completed.id, "first_harvest")
        self.assertEqual(progress.harvest_count, 0)

    def test_unique_npcs_ignore_repeat_talks(self) -> None:
        progress = MissionProgress(index=5)
        apply_event(progress, MissionEvent(kind="talk", npc_id="npc_guard", role="Town Guard"))
        repeat = apply_event(progress, MissionEvent(kind="talk", npc_id="npc_guard", role="Town Guard"))
        self.assertFalse(repeat.changed)
        apply_event(progress, MissionEvent(kind="talk", npc_id="npc_artist", role="Artist"))
        done = apply_event(progress, MissionEvent(kind="talk", npc_id="npc_herbalist", role="Herbalist"))
        self.assertEqual(done.completed.id, "new_faces")

    def test_finished_chain_needs_dynamic_mission(self) -> None:
        progress = MissionProgress(index=len(MISSION_CHAIN))
        self.assertTrue(progress.chain_complete())
        self.assertTrue(progress.needs_dynamic())
        self.assertIsNone(progress.current())
        self.assertFalse(apply_event(progress, MissionEvent(kind="harvest")).changed)

    def test_dynamic_completion_counts_and_clears(self) -> None:
        progress = MissionProgress(index=len(MISSION_CHAIN))
        progress.dynamic_mission = normalize_dynamic_mission(
            {"objective_type": "visit_area", "target_area": "Dock"}, None, day=2, rng=random.Random(1)
        )
        done = apply_event(progress, MissionEvent(kind="move", x=1300.0, y=900.0, area="Dock"))
        self.assertTrue(done.changed)
        self.assertIsNone(progress.dynamic_mission)
        self.assertEqual(progress.completed_dynamic, 1)

    def test_round_trip_through_profile_dict(self) -> None:
        progress = MissionProgress(index=6, spoken_roles=["Artist"], visited_areas=["Dock", "Nowhere"])
        restored = MissionProgress.from_dict(progress.as_dict())
        self.assertEqual(restored.index, 6)
        self.assertEqual(restored.spoken_roles, ["Artist"])
        self.assertEqual(restored.visited_areas, ["Dock"])
        self.assertEqual(MissionProgress.from_dict({"index": "bad"}).index, 0)


class DynamicMissionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.signals = QuestSignals(hot_area="Dock", hot_role="Fisherman", urgency=3, rumor_intensity=60)

    def test_garbage_draft_becomes_unique_npcs(self) -> None:
        spec = normalize_dynamic_mission("nonsense", None, day=3, rng=random.Random(2))
        self.assertEqual(spec.objective_type, "talk_unique_npcs")
        self.assertEqual(spec.target_count, 2)
        self.assertEqual(spec.urgency, 1)
        self.assertEqual(spec.reward_coins, 12)

    def test_signals_fill_missing_targets_and_urgency(self) -> None:
        spec = normalize_dynamic_mission({"objective_type": "visit_area", "target_area": "Moon"}, self.signals, day=3)
        self.assertEqual(spec.target_area, "Dock")
        self.assertEqual(spec.urgency, 3)
        role_spec = normalize_dynamic_mission({"objective_type": "talk_role"}, self.signals, day=3)
        self.assertEqual(role_spec.target_role, "Fisherman")

    def test_npc_names_are_matched_loosely(self) -> None:
        spec = normalize_dynamic_mission({"objective_type": "talk_npc", "target_npc_name": "sister elen"}, None, day=1)
        self.assertEqual(spec.target_npc_id, "npc_devotee")

    def test_counts_are_clamped(self) -> None:
        spec = normalize_dynamic_mission({"objective_type": "harvest_count", "target_count": 40}, None, day=1)
        self.assertEqual(spec.target_count, 5)

    def test_reward_scales_with_multiplier_and_urgency(self) -> None:
        spec = normalize_dynamic_mission(
            {"objective_type": "harvest_count", "target_count": 2, "urgency": 3}, None, day=1, reward_multiplier=1.35
        )
        self.assertEqual(spec.reward_coins, round(round((6 + 3 * 2) * 1.35) * 1.2))


class TownMissionTests(unittest.TestCase):
    def test_talk_to_any_npc_completes_once(self) -> None:
        mission = TownMission(
            id="town_1_a", title="Chatter", description="", objective_type="talk_to_any_npc", target_count=2
        )
        progress = MissionProgress()
        apply_town_event(progress, mission, MissionEvent(kind="talk", npc_id="npc_guard"))
        self.assertFalse(apply_town_event(progress, mission, MissionEvent(kind="talk", npc_id="npc_guard")).changed)
        done = apply_town_event(progress, mission, MissionEvent(kind="talk", npc_id="npc_artist"))
        self.assertTrue(done.completed)
        again = apply_town_event(progress, mission, MissionEvent(kind="talk", npc_id="npc_herbalist"))
        self.assertFalse(again.changed)

    def test_rotated_mission_starts_fresh(self) -> None:
        first = TownMission(id="town_1_a", title="A", description="", objective_type="harvest_any", target_count=1)
        second = TownMission(id="town_2_b", title="B", description="", objective_type="harvest_any", target_count=2)
        progress = MissionProgress()
        self.assertTrue(apply_town_event(progress, first, MissionEvent(kind="harvest")).completed)
        result = apply_town_event(progress, second, MissionEvent(kind="harvest"))
        self.assertTrue(result.changed)
        self.assertFalse(result.completed)
        self.assertEqual(progress.town.mission_id, "town_2_b")

    def test_normalize_town_mission_fills_defaults(self) -> None:
        mission = normalize_town_mission({"objective_type": "visit_area", "target_area": "Dock"}, day=4)
        self.assertEqual(mission.target_area, "Dock")
        self.assertEqual(mission.target_count, 1)
        fallback = normalize_town_mission(None, day=4)
        self.assertEqual(fallback.objective_type, "talk_to_any_npc")


class CompletionTests(unittest.TestCase):
    def test_grant_completion_pays_coins_and_reputation(self) -> None:
        world = create_world(rng=random.Random(3), now=0.0)
        player = PlayerSession(session_id="s1", player_id="p1")
        coins_before = world.farm_for("p1").coins
        reward = grant_completion(world, player, MISSION_CHAIN[4], now=5.0)
        self.assertEqual(reward.coins, 12)
        self.assertEqual(world.farm_for("p1").coins, coins_before + 12)
        self.assertEqual(player.reputation.score, 2)
        self.assertFalse(reward.arc.changed)

    def test_mission_view_reports_progress(self) -> None:
        progress = MissionProgress(index=4, harvest_count=1)
        view = mission_view(progress, None)
        self.assertEqual(view["step"], 5)
        self.assertEqual(view["current"]["progress"], 1)
        self.assertEqual(view["current"]["target"], 2)
        self.assertIsNone(view["town"])


if __name__ == "__main__":
    unittest.main()
