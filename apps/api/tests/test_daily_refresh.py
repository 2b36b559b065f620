#!/usr/bin/env python3

from __future__ import annotations

import random
import unittest
from dataclasses import replace

from packages.lantern_core.llm.policy import default_policy_for_task
from packages.lantern_core.sim.daily_refresh import DailyRefresher, run_daily_refresh_pipeline
from packages.lantern_core.sim.generator import LineGenerator
from packages.lantern_core.sim.world import create_world


class RefreshPipelineTests(unittest.IsolatedAsyncioTestCase):
    async def test_failed_step_still_reports(self) -> None:
        done: list[str] = []
        cleared: list[bool] = []

        async def ok() -> None:
            return None

        async def boom() -> None:
            raise RuntimeError("generator offline")

        outcomes = await run_daily_refresh_pipeline(
            clear_caches=lambda: cleared.append(True),
            refresh_town_mission=ok,
            refresh_economy=boom,
            refresh_world_events=ok,
            on_step_done=lambda: done.append("x"),
        )
        self.assertEqual(cleared, [True])
        self.assertEqual(len(done), 3)
        by_name = {outcome.name: outcome for outcome in outcomes}
        self.assertTrue(by_name["town_mission"].ok)
        self.assertFalse(by_name["economy"].ok)
        self.assertIn("generator offline", by_name["economy"].error)

    async def test_story_arc_only_when_requested(self) -> None:
        calls: list[str] = []

        async def arc() -> None:
            calls.append("arc")

        await run_daily_refresh_pipeline(refresh_story_arc=arc)
        self.assertEqual(calls, [])
        outcomes = await run_daily_refresh_pipeline(should_refresh_story_arc=True, refresh_story_arc=arc)
        self.assertEqual(calls, ["arc"])
        self.assertEqual([o.name for o in outcomes], ["story_arc"])

    async def test_async_step_callback_is_awaited(self) -> None:
        seen: list[int] = []

        async def on_done() -> None:
            seen.append(1)

        async def ok() -> None:
            return None

        await run_daily_refresh_pipeline(refresh_routine_nudges=ok, on_step_done=on_done)
        self.assertEqual(seen, [1])


class _BrokenGenerator:
    def __getattr__(self, name: str):
        def fail(context):
            raise RuntimeError(f"{name} unavailable")

        return fail


class DailyRefresherTests(unittest.IsolatedAsyncioTestCase):
    async def test_offline_generation_installs_valid_state(self) -> None:
        world = create_world(rng=random.Random(9), now=0.0)
        generator = LineGenerator(policy_lookup=lambda name: replace(default_policy_for_task(name), model_tier="heuristic"))
        refresher = DailyRefresher(world, generator)
        await refresher.refresh_story_arc()
        await refresher.refresh_town_mission()
        await refresher.refresh_economy()
        self.assertIsNotNone(world.story_arc)
        self.assertTrue(world.town_mission.id)
        self.assertGreaterEqual(world.economy.reward_multiplier, 0.75)
        self.assertLessEqual(world.economy.reward_multiplier, 1.35)

    async def test_generation_failure_falls_back(self) -> None:
        world = create_world(rng=random.Random(4), now=0.0)
        refresher = DailyRefresher(world, _BrokenGenerator())
        await refresher.refresh_town_mission()
        await refresher.refresh_story_arc()
        self.assertEqual(world.town_mission.objective_type, "talk_to_any_npc")
        self.assertIsNotNone(world.story_arc)


if __name__ == "__main__":
    unittest.main()
