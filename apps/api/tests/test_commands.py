#!/usr/bin/env python3

from __future__ import annotations

import random
import unittest

from packages.lantern_core.sim.clock import Moment
from packages.lantern_core.sim.commands import (
    DirectiveCommand,
    TaskCommand,
    apply_command,
    is_observation_question,
    next_occurrence,
    parse_command,
    parse_duration,
    parse_time_of_day,
)
from packages.lantern_core.sim.layout import NPC_SEEDS
from packages.lantern_core.sim.world import PlayerSession, create_world


NAMES = [seed.name for seed in NPC_SEEDS]
MORNING = Moment(day=1, minute=8 * 60)


class TimeParsingTests(unittest.TestCase):
    def test_time_of_day_forms(self) -> None:
        self.assertEqual(parse_time_of_day("dusk"), 960)
        self.assertEqual(parse_time_of_day("noon"), 720)
        self.assertEqual(parse_time_of_day("9pm"), 1260)
        self.assertEqual(parse_time_of_day("7:15 am"), 435)
        self.assertEqual(parse_time_of_day("12am"), 0)
        self.assertEqual(parse_time_of_day("21:30"), 1290)

    def test_invalid_times(self) -> None:
        self.assertIsNone(parse_time_of_day("13pm"))
        self.assertIsNone(parse_time_of_day("24:00"))
        self.assertIsNone(parse_time_of_day("9:75"))
        self.assertIsNone(parse_time_of_day("teatime"))

    def test_durations(self) -> None:
        self.assertEqual(parse_duration("for 2 hours"), 120)
        self.assertEqual(parse_duration("for an hour"), 60)
        self.assertEqual(parse_duration("for half an hour"), 30)
        self.assertEqual(parse_duration("for 45 minutes"), 45)
        self.assertIsNone(parse_duration("forever"))

    def test_next_occurrence_rolls_to_tomorrow(self) -> None:
        self.assertEqual(next_occurrence(MORNING, 960), Moment(day=1, minute=960))
        self.assertEqual(next_occurrence(MORNING, 420), Moment(day=2, minute=420))
        self.assertEqual(next_occurrence(MORNING, 60), Moment(day=1, minute=60))


class ParseCommandTests(unittest.TestCase):
    def parse(self, text: str):
        return parse_command(text, MORNING, NAMES)

    def test_follow_until_dusk(self) -> None:
        command = self.parse("follow me until dusk")
        self.assertIsInstance(command, DirectiveCommand)
        self.assertEqual(command.mode, "follow_player")
        self.assertEqual(command.until, Moment(day=1, minute=960))

    def test_addressed_keep_distance(self) -> None:
        command = self.parse("Rook, keep distance")
        self.assertEqual(command.mode, "keep_distance")
        self.assertEqual(command.npc_name, "rook")

    def test_multiword_name_and_duration(self) -> None:
        command = self.parse("Sister Elen, follow me for an hour")
        self.assertEqual(command.npc_name, "sister elen")
        self.assertEqual(command.until, Moment(day=1, minute=540))

    def test_go_to_area_for_a_while(self) -> None:
        command = self.parse("go to the dock for 2 hours")
        self.assertEqual((command.mode, command.area), ("area", "Dock"))
        self.assertEqual(command.until, Moment(day=1, minute=600))

    def test_talk_task(self) -> None:
        command = self.parse("Mira, talk to Bram about the tide")
        self.assertIsInstance(command, TaskCommand)
        self.assertEqual((command.kind, command.npc_name, command.target_name, command.topic), ("talk_to_npc", "mira", "Bram", "the tide"))

    def test_scheduled_observation(self) -> None:
        command = self.parse("watch the market street at 9pm for 30 minutes")
        self.assertEqual(command.kind, "observe_area")
        self.assertEqual(command.area, "Market Street")
        self.assertEqual(command.start_at, Moment(day=1, minute=1260))
        self.assertEqual(command.duration_minutes, 30)

    def test_patrol_is_a_directive_unless_scheduled(self) -> None:
        self.assertEqual(self.parse("patrol the dock").label, "patrol Dock")
        scheduled = self.parse("patrol the dock at dusk")
        self.assertIsInstance(scheduled, TaskCommand)
        self.assertEqual(scheduled.duration_minutes, 60)

    def test_observation_duration_is_clamped(self) -> None:
        self.assertEqual(self.parse("observe the forest for 2 minutes").duration_minutes, 10)
        self.assertEqual(self.parse("observe anywhere for 12 hours").duration_minutes, 360)

    def test_other_movement_forms(self) -> None:
        self.assertEqual(self.parse("stop").mode, "hold")
        self.assertTrue(self.parse("go to my house").to_home)
        self.assertEqual(self.parse("return to your routine").mode, "routine")

    def test_chat_is_not_a_command(self) -> None:
        self.assertIsNone(self.parse("lovely weather today"))
        self.assertIsNone(self.parse("can you follow me?"))
        self.assertIsNone(self.parse(""))

    def test_observation_questions(self) -> None:
        self.assertTrue(is_observation_question("What did you see at the dock"))
        self.assertTrue(is_observation_question("anyone there?"))
        self.assertFalse(is_observation_question("nice day?"))


class ApplyCommandTests(unittest.TestCase):
    def setUp(self) -> None:
        self.world = create_world(rng=random.Random(5), now=0.0)
        for character in self.world.characters.values():
            character.x, character.y = 1500.0, 100.0
        self.player = PlayerSession(session_id="s1", player_id="p1", name="Ada", x=800.0, y=800.0)
        self.world.players["s1"] = self.player
        self.guard = self.world.characters["npc_guard"]
        self.guard.x, self.guard.y = 820.0, 800.0

    def apply(self, text: str):
        return apply_command(self.world, self.player, parse_command(text, MORNING, NAMES), now=100.0)

    def test_nearest_character_follows(self) -> None:
        result = self.apply("follow me until dusk")
        self.assertTrue(result.ok)
        self.assertEqual(result.npc_id, "npc_guard")
        self.assertEqual(result.message, "Rook will follow you until 4:00 PM.")
        self.assertEqual(self.guard.directive.target_player_id, "p1")

    def test_home_directive_points_at_farm(self) -> None:
        self.apply("go to my house")
        self.assertEqual((self.guard.directive.x, self.guard.directive.y), (680.0, 220.0))

    def test_nobody_in_reach(self) -> None:
        self.guard.x = 1200.0
        result = self.apply("stop")
        self.assertFalse(result.ok)
        self.assertEqual(result.message, "No nearby NPC to command. Stand near someone first.")

    def test_named_character_is_used_even_when_far(self) -> None:
        result = self.apply("Mira, observe the forest")
        self.assertTrue(result.ok)
        self.assertEqual(result.npc_id, "npc_herbalist")
        self.assertEqual(result.message, "Mira will observe Forest now for 1 hour. I'll report back.")

    def test_talk_to_self_is_rejected(self) -> None:
        result = self.apply("Rook, talk to Rook about the gate")
        self.assertFalse(result.ok)

    def test_queue_limit(self) -> None:
        for _ in range(4):
            self.assertTrue(self.apply("observe the dock").ok)
        result = self.apply("observe the dock")
        self.assertFalse(result.ok)
        self.assertIn("already busy", result.message)

    def test_directive_clears_queued_tasks(self) -> None:
        self.apply("observe the dock")
        self.apply("stop")
        self.assertEqual(self.guard.tasks, [])
        self.assertEqual(self.guard.directive.mode, "hold")


if __name__ == "__main__":
    unittest.main()
