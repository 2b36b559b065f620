#!/usr/bin/env python3

from __future__ import annotations

import random
import unittest

from packages.lantern_core.sim.clock import (
    MINUTES_PER_DAY,
    Moment,
    advance_clock,
    day_crossings,
    duration_label,
    skip_overnight,
    time_label,
)
from packages.lantern_core.sim.world import create_world


class ClockTests(unittest.TestCase):
    def test_day_rolls_over_at_dawn_not_midnight(self) -> None:
        world = create_world()
        world.minute = 23 * 60 + 55
        advance = advance_clock(world, 10)
        self.assertFalse(advance.day_changed)
        self.assertEqual(world.day, 1)
        self.assertEqual(world.minute, 5)

        world.minute = 5 * 60 + 55
        world.town_log = ["Bram sold fish at the dock."]
        advance = advance_clock(world, 5)
        self.assertTrue(advance.day_changed)
        self.assertEqual(world.day, 2)
        self.assertEqual(world.minute, 6 * 60)
        self.assertEqual(world.yesterday_log, ["Bram sold fish at the dock."])
        self.assertEqual(world.town_log, [])

    def test_multi_day_jump_counts_every_crossing(self) -> None:
        self.assertEqual(day_crossings(8 * 60, 3 * 24 * 60), 3)
        world = create_world()
        advance_clock(world, 2 * 24 * 60)
        self.assertEqual(world.day, 3)
        self.assertEqual(world.minute, 8 * 60)

    def test_overnight_skip_jumps_to_six(self) -> None:
        world = create_world()
        world.minute = 2 * 60 + 15
        skipped = skip_overnight(world)
        self.assertIsNotNone(skipped)
        self.assertTrue(skipped.day_changed)
        self.assertEqual(world.minute, 6 * 60)
        self.assertEqual(world.day, 2)

        world.minute = 1 * 60 + 59
        self.assertIsNone(skip_overnight(world))

    def test_random_deltas_match_a_plain_minute_counter(self) -> None:
        for seed in range(50):
            rng = random.Random(seed)
            world = create_world(rng=rng, now=0.0)
            total = world.minute
            for _ in range(40):
                delta = rng.choice((0, rng.randint(1, 30), rng.randint(1, 400), rng.randint(1, 4000)))
                day_before = world.day
                crossings = day_crossings(world.minute, delta)
                advance = advance_clock(world, delta)
                total += delta
                expected_day = 1 + (total - 6 * 60) // MINUTES_PER_DAY
                self.assertEqual(world.minute, total % MINUTES_PER_DAY)
                self.assertEqual(world.day, expected_day)
                self.assertEqual(crossings, expected_day - day_before)
                self.assertEqual(advance.day_changes, crossings)
                self.assertTrue(0 <= world.minute < MINUTES_PER_DAY)
                self.assertGreaterEqual(world.day, day_before)

    def test_skip_from_anywhere_in_the_window_starts_a_new_day(self) -> None:
        for minute in range(2 * 60, 6 * 60, 7):
            world = create_world(now=0.0)
            world.minute = minute
            skipped = skip_overnight(world)
            self.assertEqual(skipped.day_changes, 1)
            self.assertEqual((world.day, world.minute), (2, 6 * 60))

    def test_moment_ordering_uses_dawn_based_days(self) -> None:
        late = Moment(day=1, minute=1 * 60)
        early = Moment(day=1, minute=7 * 60)
        self.assertTrue(late.reached_by(Moment(day=1, minute=2 * 60)))
        self.assertTrue(early.reached_by(late))
        self.assertEqual(Moment(day=1, minute=23 * 60).plus(120), Moment(day=1, minute=1 * 60))

    def test_moment_from_dict_rejects_garbage(self) -> None:
        self.assertIsNone(Moment.from_dict({"day": "x"}))
        self.assertIsNone(Moment.from_dict(None))
        self.assertEqual(Moment.from_dict({"day": 0, "minute": 1500}), Moment(day=1, minute=60))

    def test_labels(self) -> None:
        self.assertEqual(time_label(0), "12:00 AM")
        self.assertEqual(time_label(12 * 60 + 5), "12:05 PM")
        self.assertEqual(time_label(20 * 60 + 30), "8:30 PM")
        self.assertEqual(duration_label(60), "1 hour")
        self.assertEqual(duration_label(120), "2 hours")
        self.assertEqual(duration_label(45), "45 minutes")


if __name__ == "__main__":
    unittest.main()
