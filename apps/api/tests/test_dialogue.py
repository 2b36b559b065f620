#!/usr/bin/env python3

from __future__ import annotations

import random
import unittest
from dataclasses import replace
from typing import Any

from packages.lantern_core.llm.policy import default_policy_for_task
from packages.lantern_core.sim.dialogue import (
    CancellationToken,
    DialogueOrchestrator,
    EventSink,
    candidate_pairs,
    moved_off_anchor,
    pick_conversation_pair,
    split_into_chunks,
)
from packages.lantern_core.sim.generator import LineGenerator
from packages.lantern_core.sim.memory import InMemoryMemoryStore
from packages.lantern_core.sim.world import PlayerSession, World, create_world


def offline_generator() -> LineGenerator:
    return LineGenerator(policy_lookup=lambda name: replace(default_policy_for_task(name), model_tier="heuristic"))


class RecordingSink(EventSink):
    def __init__(self) -> None:
        self.broadcasts: list[dict[str, Any]] = []
        self.direct: list[tuple[str, dict[str, Any]]] = []

    async def to_session(self, session_id: str, payload: dict[str, Any]) -> None:
        self.direct.append((session_id, payload))

    async def broadcast(self, payload: dict[str, Any]) -> None:
        self.broadcasts.append(payload)


async def _no_sleep(_: float) -> None:
    return None


def _park_everyone(world: World) -> None:
    for character in world.characters.values():
        character.x, character.y = 1500.0, 100.0


def _join(world: World, x: float = 800.0, y: float = 800.0) -> PlayerSession:
    player = PlayerSession(session_id="s1", player_id="p1", name="Ada", x=x, y=y)
    world.players[player.session_id] = player
    return player


class ChunkingTests(unittest.TestCase):
    def test_short_lines_stay_whole(self) -> None:
        line = " ".join(f"w{i}" for i in range(16))
        self.assertEqual(split_into_chunks(line), [line])

    def test_long_lines_split_into_twelve_word_chunks(self) -> None:
        chunks = split_into_chunks(" ".join(f"w{i}" for i in range(30)))
        self.assertEqual([len(chunk.split()) for chunk in chunks], [12, 12, 6])

    def test_anchor_tolerance(self) -> None:
        player = PlayerSession(session_id="s1", player_id="p1", x=100.0, y=100.0)
        player.dialogue.anchor_x, player.dialogue.anchor_y = 100.0, 100.0
        self.assertFalse(moved_off_anchor(player, 101.5, 100.0))
        self.assertTrue(moved_off_anchor(player, 103.0, 100.0))


class PairingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.world = create_world(rng=random.Random(7), now=0.0)
        _park_everyone(self.world)

    def _place(self, npc_id: str, x: float, y: float) -> None:
        character = self.world.characters[npc_id]
        character.x, character.y = x, y

    def test_no_pairs_without_an_awake_player_nearby(self) -> None:
        self._place("npc_artist", 800.0, 810.0)
        self._place("npc_guard", 820.0, 800.0)
        self.assertEqual(candidate_pairs(self.world, now=0.0), [])
        player = _join(self.world)
        player.sleeping = True
        self.assertEqual(candidate_pairs(self.world, now=0.0), [])

    def test_cooldown_excludes_characters(self) -> None:
        _join(self.world)
        self._place("npc_artist", 800.0, 810.0)
        self._place("npc_guard", 820.0, 800.0)
        self.assertEqual(len(candidate_pairs(self.world, now=0.0)), 1)
        self.world.characters["npc_guard"].talk_cooldown_until = 50.0
        self.assertEqual(candidate_pairs(self.world, now=10.0), [])

    def test_grudge_pair_skipped_when_alternatives_exist(self) -> None:
        _join(self.world)
        self._place("npc_devotee", 800.0, 810.0)
        self._place("npc_cultist", 820.0, 800.0)
        self._place("npc_artist", 810.0, 790.0)
        for seed in range(20):
            a, b = pick_conversation_pair(self.world, now=0.0, rng=random.Random(seed))
            self.assertNotEqual({a.id, b.id}, {"npc_devotee", "npc_cultist"})

    def test_grudge_pair_used_when_it_is_the_only_one(self) -> None:
        _join(self.world)
        self._place("npc_devotee", 800.0, 810.0)
        self._place("npc_cultist", 820.0, 800.0)
        a, b = pick_conversation_pair(self.world, now=0.0, rng=random.Random(1))
        self.assertEqual({a.id, b.id}, {"npc_devotee", "npc_cultist"})


class PlayerConversationTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.world = create_world(rng=random.Random(11), now=0.0)
        _park_everyone(self.world)
        self.player = _join(self.world)
        self.guard = self.world.characters["npc_guard"]
        self.guard.x, self.guard.y = 830.0, 800.0
        self.store = InMemoryMemoryStore()
        self.sink = RecordingSink()
        self.orchestrator = DialogueOrchestrator(
            self.world, self.store, offline_generator(), self.sink, clock=lambda: 1000.0, sleep=_no_sleep
        )

    async def test_first_meeting_introduces_and_waits(self) -> None:
        await self.orchestrator.start(self.player, self.guard)
        first = self.sink.broadcasts[0]
        self.assertEqual(first["kind"], "npc_to_player")
        self.assertEqual(first["text"], "Welcome. I'm Rook, the town's town guard.")
        self.assertTrue(first["waiting_for_reply"])
        self.assertTrue(self.player.dialogue.waiting_for_reply)
        self.assertIn(("s1", {"type": "dialogue_waiting_reply", "npc_id": "npc_guard", "npc_name": "Rook"}), self.sink.direct)
        self.assertTrue(self.store.has_introduced("npc_guard", "p1"))
        self.assertGreater(self.guard.talk_cooldown_until, 1000.0)

    async def test_reply_records_commitment_and_answers(self) -> None:
        await self.orchestrator.start(self.player, self.guard)
        await self.orchestrator.reply(self.player, self.guard, "I promise to watch the forest tonight")
        kinds = [event["kind"] for event in self.sink.broadcasts]
        self.assertEqual(kinds[:3], ["npc_to_player", "player_chat", "npc_to_player"])
        commitments = self.store.memories_by_type("npc_guard", "player_commitment")
        self.assertEqual(commitments[0].category(), "promise")
        self.assertTrue(self.player.dialogue.active)

    async def test_second_reply_needs_a_new_line(self) -> None:
        await self.orchestrator.start(self.player, self.guard)
        self.player.dialogue.waiting_for_reply = False
        await self.orchestrator.reply(self.player, self.guard, "hello again")
        self.assertEqual(len(self.sink.broadcasts), 1)

    async def test_walking_away_ends_the_conversation(self) -> None:
        await self.orchestrator.start(self.player, self.guard)
        self.player.x = 1200.0
        await self.orchestrator.reply(self.player, self.guard, "still there?")
        self.assertFalse(self.player.dialogue.active)
        self.assertEqual(self.sink.direct[-1], ("s1", {"type": "dialogue_ended"}))

    async def test_continue_without_chunks_ends(self) -> None:
        self.player.dialogue.active = True
        self.player.dialogue.npc_id = "npc_guard"
        await self.orchestrator.continue_chunk(self.player, self.guard)
        self.assertFalse(self.player.dialogue.active)


class NpcConversationTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.world = create_world(rng=random.Random(3), now=0.0)
        self.sink = RecordingSink()
        self.orchestrator = DialogueOrchestrator(
            self.world, InMemoryMemoryStore(), offline_generator(), self.sink, clock=lambda: 500.0, sleep=_no_sleep
        )
        self.a = self.world.characters["npc_artist"]
        self.b = self.world.characters["npc_blacksmith"]

    async def test_conversation_alternates_and_sets_cooldowns(self) -> None:
        spoken = await self.orchestrator.run_conversation(self.a, self.b, CancellationToken())
        self.assertIn(spoken, (2, 3))
        speakers = [event["speaker_id"] for event in self.sink.broadcasts]
        self.assertNotEqual(speakers[0], speakers[1])
        self.assertEqual(self.a.talk_cooldown_until, 530.0)
        self.assertFalse(self.orchestrator.conversation_active)

    async def test_cancelled_token_stops_before_first_line(self) -> None:
        token = CancellationToken()
        token.cancel()
        spoken = await self.orchestrator.run_conversation(self.a, self.b, token)
        self.assertEqual(spoken, 0)
        self.assertEqual(self.sink.broadcasts, [])

    async def test_player_dialogue_blocks_new_npc_conversations(self) -> None:
        player = _join(self.world)
        player.dialogue.active = True
        self.assertIsNone(self.orchestrator.maybe_start_conversation())


if __name__ == "__main__":
    unittest.main()
