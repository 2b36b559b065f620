#!/usr/bin/env python3

from __future__ import annotations

import random
import unittest

from packages.lantern_core.sim.relations import pair_key
from packages.lantern_core.sim.social_state import (
    TODAY_LOG_LIMIT,
    apply_world_events,
    blend_faction_pulse,
    default_factions,
    derived_view,
    fallback_story_arc,
    normalize_economy,
    normalize_world_events,
    progress_story_arc,
    push_town_event,
    rumor_hotspots,
    set_economy,
)
from packages.lantern_core.sim.world import create_world


class RumorHeatTests(unittest.TestCase):
    def test_town_events_spike_areas_roles_and_topics(self) -> None:
        world = create_world(rng=random.Random(1), now=0.0)
        push_town_event(world, "A Fisherman started a fight at the Dock.")
        hot = rumor_hotspots(world.rumor_heat)
        self.assertEqual((hot["area"], hot["role"], hot["intensity"]), ("Dock", "Fisherman", 8))
        self.assertEqual(hot["topics"], ["fight"])

    def test_heat_decays_on_every_event(self) -> None:
        world = create_world(now=0.0)
        push_town_event(world, "Quiet at the Dock.")
        push_town_event(world, "Nothing much.")
        self.assertEqual(world.rumor_heat.areas["Dock"], 7)

    def test_town_log_is_bounded(self) -> None:
        world = create_world(now=0.0)
        for idx in range(TODAY_LOG_LIMIT + 5):
            push_town_event(world, f"event {idx}")
        push_town_event(world, "   ")
        self.assertEqual(len(world.town_log), TODAY_LOG_LIMIT)
        self.assertEqual(world.town_log[-1], f"event {TODAY_LOG_LIMIT + 4}")


class FactionTests(unittest.TestCase):
    def test_pulse_is_damped_and_unknown_names_ignored(self) -> None:
        state = default_factions()
        blend_faction_pulse(
            state,
            {
                "factions": [{"name": "Civic Watch", "influence": 70}, {"name": "Pirates", "influence": 99}],
                "tensions": [{"a": "Lantern Circle", "b": "Civic Watch", "value": 100}],
            },
        )
        self.assertEqual(state.factions["Civic Watch"].influence, 57)
        self.assertNotIn("Pirates", state.factions)
        self.assertEqual(state.tensions[pair_key("Civic Watch", "Lantern Circle")], 73)

    def test_influence_target_is_clamped(self) -> None:
        state = default_factions()
        blend_faction_pulse(state, {"factions": [{"name": "Shrine Circle", "influence": 1000}]})
        self.assertEqual(state.factions["Shrine Circle"].influence, 60)


class WorldEventTests(unittest.TestCase):
    def test_events_are_normalized(self) -> None:
        rows = [{"title": ""}] + [
            {"title": f"Event {i}", "area": "Moon", "severity": 9, "effect": "earthquake"} for i in range(6)
        ]
        events = normalize_world_events({"events": rows}, day=2)
        self.assertEqual(len(events), 4)
        self.assertEqual(events[0].id, "event_2_1")
        self.assertIsNone(events[0].area)
        self.assertEqual(events[0].severity, 2)
        self.assertEqual(events[0].effect, "none")

    def test_effects_change_weather_and_rewards(self) -> None:
        world = create_world(now=0.0)
        events = normalize_world_events(
            [
                {"title": "Squall", "effect": "weather_shift", "area": "Dock"},
                {"title": "Salt shortage", "effect": "price_spike", "severity": 2},
            ],
            day=1,
        )
        apply_world_events(world, events)
        self.assertEqual(world.weather, "rain")
        self.assertAlmostEqual(world.economy.reward_multiplier, 1.08)
        self.assertTrue(world.town_log[0].startswith("Event: Squall (Dock)"))

    def test_price_spike_survives_a_later_economy_refresh(self) -> None:
        spike = normalize_world_events([{"title": "Salt shortage", "effect": "price_spike", "severity": 2}], day=1)
        events_first = create_world(now=0.0)
        apply_world_events(events_first, spike)
        set_economy(events_first, {"reward_multiplier": 1.1})
        economy_first = create_world(now=0.0)
        set_economy(economy_first, {"reward_multiplier": 1.1})
        apply_world_events(economy_first, spike)
        self.assertAlmostEqual(events_first.economy.reward_multiplier, 1.188)
        self.assertAlmostEqual(economy_first.economy.reward_multiplier, 1.188)
        self.assertEqual(events_first.economy.base_multiplier, 1.1)

    def test_spike_ends_with_the_event(self) -> None:
        world = create_world(now=0.0)
        apply_world_events(world, normalize_world_events([{"title": "Salt shortage", "effect": "price_spike"}], day=1))
        self.assertAlmostEqual(world.economy.reward_multiplier, 1.04)
        apply_world_events(world, [])
        self.assertEqual(world.economy.reward_multiplier, 1.0)


class EconomyAndArcTests(unittest.TestCase):
    def test_prices_are_clamped_around_base(self) -> None:
        plan = normalize_economy({"prices": {"turnip": 100, "carrot": 1}, "demand": {"turnip": "HIGH", "carrot": "???"}, "reward_multiplier": 9})
        self.assertEqual(plan.prices["turnip"], 16)
        self.assertEqual(plan.prices["carrot"], 5)
        self.assertEqual(plan.demand, {"turnip": "high", "carrot": "normal", "pumpkin": "normal"})
        self.assertEqual(plan.reward_multiplier, 1.35)

    def test_story_arc_advances_every_two_completions(self) -> None:
        world = create_world(now=0.0)
        world.story_arc = fallback_story_arc(1)
        first = progress_story_arc(world, "harvest_count")
        self.assertFalse(first.stage_advanced)
        second = progress_story_arc(world, "harvest_count")
        self.assertTrue(second.stage_advanced)
        self.assertEqual(world.story_arc.stage_index, 1)

    def test_arc_resolution_picks_branch_by_objective(self) -> None:
        world = create_world(now=0.0)
        arc = fallback_story_arc(1)
        arc.stage_index, arc.stage_progress = 2, 1
        world.story_arc = arc
        result = progress_story_arc(world, "talk_npc")
        self.assertTrue(result.completed)
        self.assertEqual(arc.branch_outcome, arc.branches[0])
        self.assertEqual(world.town_log[-1], "Story arc resolved: The Shrine Lantern.")

    def test_derived_view_is_cached_until_touched(self) -> None:
        world = create_world(now=0.0)
        first = derived_view(world)
        second = derived_view(world)
        self.assertIsNot(second, first)
        self.assertIs(second["factions"], first["factions"])
        push_town_event(world, "Something moved in the Forest.")
        self.assertIsNot(derived_view(world)["factions"], first["factions"])

    def test_callers_cannot_corrupt_the_cached_view(self) -> None:
        world = create_world(now=0.0)
        view = derived_view(world)
        view.pop("rumor")
        view["economy"] = None
        again = derived_view(world)
        self.assertEqual(again["rumor"], world.rumor)
        self.assertEqual(again["economy"]["reward_multiplier"], 1.0)


if __name__ == "__main__":
    unittest.main()
