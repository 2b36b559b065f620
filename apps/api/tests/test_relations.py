#!/usr/bin/env python3

from __future__ import annotations

import unittest

from packages.lantern_core.sim.relations import (
    Reputation,
    apply_reputation_delta,
    bump_relation,
    hydrate_relations,
    pair_key,
    relation_hints,
    relation_label,
    relation_score,
    seed_relations,
)


class RelationTests(unittest.TestCase):
    def test_relations_are_symmetric(self) -> None:
        relations = seed_relations(now=0.0)
        self.assertEqual(relation_score(relations, "npc_cultist", "npc_devotee"), -7)
        self.assertEqual(relation_score(relations, "npc_devotee", "npc_cultist"), -7)
        self.assertEqual(pair_key("b", "a"), "a|b")

    def test_bump_clamps_and_ignores_self(self) -> None:
        relations: dict = {}
        entry = bump_relation(relations, "a", "b", 50, "big favor", now=1.0)
        self.assertEqual(entry.score, 10)
        self.assertIsNone(bump_relation(relations, "a", "a", 1))
        self.assertEqual(relation_score(relations, "a", "a"), 0)

    def test_labels(self) -> None:
        self.assertEqual(relation_label(6), "ally")
        self.assertEqual(relation_label(3), "friendly")
        self.assertEqual(relation_label(0), "neutral")
        self.assertEqual(relation_label(-4), "cold")
        self.assertEqual(relation_label(-7), "grudge")

    def test_hints_sort_by_magnitude(self) -> None:
        relations = seed_relations(now=0.0)
        hints = relation_hints(relations, "npc_cultist", limit=2)
        self.assertEqual(hints[0]["other_id"], "npc_devotee")
        self.assertEqual(hints[1]["other_id"], "npc_guard")

    def test_hydrate_drops_malformed_keys(self) -> None:
        raw = {"a|b": {"score": 99}, "nokey": {"score": 1}, "c|c": {"score": 1}, "d|e": "bad"}
        relations = hydrate_relations(raw)
        self.assertEqual(list(relations), ["a|b"])
        self.assertEqual(relations["a|b"].score, 10)


class ReputationTests(unittest.TestCase):
    def test_delta_updates_global_role_and_history(self) -> None:
        rep = Reputation()
        apply_reputation_delta(rep, 3, role="Town Guard", reason="reported the shrine", now=1.0)
        self.assertEqual(rep.score, 3)
        self.assertEqual(rep.by_role["Town Guard"], 3)
        self.assertEqual(rep.recent[-1]["reason"], "reported the shrine")

    def test_zero_delta_is_noop_and_history_is_bounded(self) -> None:
        rep = Reputation()
        apply_reputation_delta(rep, 0, reason="nothing")
        self.assertEqual(rep.recent, [])
        for idx in range(20):
            apply_reputation_delta(rep, 1, reason=f"step {idx}", now=float(idx))
        self.assertEqual(len(rep.recent), 8)
        self.assertEqual(rep.as_dict()["label"], "liked")

    def test_role_reputation_is_clamped(self) -> None:
        rep = Reputation()
        apply_reputation_delta(rep, 100, role="Artist")
        self.assertEqual(rep.by_role["Artist"], 60)
        self.assertEqual(Reputation.from_dict({"score": 500}).score, 100)


if __name__ == "__main__":
    unittest.main()
