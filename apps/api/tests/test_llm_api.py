#!/usr/bin/env python3

from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[3]
TEST_DB_DIR = tempfile.TemporaryDirectory(dir=ROOT)
TEST_DB_PATH = Path(TEST_DB_DIR.name) / "test_llm_lantern.db"
os.environ["LANTERN_DB_PATH"] = str(TEST_DB_PATH)
os.environ["LANTERN_STATE_DIR"] = str(Path(TEST_DB_DIR.name) / "state")

from apps.api.lantern_api.main import app
from apps.api.lantern_api.storage.llm_control import insert_call_log
from apps.api.lantern_api.storage.llm_control import reset_backend_cache_for_tests as reset_llm_backend
from apps.api.lantern_api.storage.memories import reset_backend_cache_for_tests as reset_memories_backend


class LlmApiTests(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["LANTERN_DB_PATH"] = str(TEST_DB_PATH)
        if TEST_DB_PATH.exists():
            TEST_DB_PATH.unlink()
        reset_llm_backend()
        reset_memories_backend()
        self.client = TestClient(app)

    def test_default_policies_are_exposed(self) -> None:
        resp = self.client.get("/api/v1/llm/policies")
        self.assertEqual(resp.status_code, 200)
        payload = resp.json()
        self.assertGreaterEqual(payload["count"], 10)
        line_policy = next(p for p in payload["policies"] if p["task_name"] == "npc_line")
        self.assertEqual(line_policy["model_tier"], "fast")
        self.assertIn("heuristic", line_policy["fallback_chain"])

    def test_upsert_policy_then_get(self) -> None:
        put = self.client.put(
            "/api/v1/llm/policies/npc_line",
            json={
                "model_tier": "cheap",
                "max_input_tokens": 640,
                "max_output_tokens": 64,
                "temperature": 0.1,
                "timeout_ms": 1800,
                "retry_limit": 1,
                "enable_prompt_cache": True,
            },
        )
        self.assertEqual(put.status_code, 200)
        policy = put.json()["policy"]
        self.assertEqual(policy["task_name"], "npc_line")
        self.assertEqual(policy["model_tier"], "cheap")

        fetched = self.client.get("/api/v1/llm/policies/npc_line")
        self.assertEqual(fetched.status_code, 200)
        fetched_policy = fetched.json()["policy"]
        self.assertEqual(fetched_policy["model_tier"], "cheap")
        self.assertEqual(int(fetched_policy["max_input_tokens"]), 640)

    def test_invalid_tier_is_rejected(self) -> None:
        put = self.client.put(
            "/api/v1/llm/policies/npc_line",
            json={
                "model_tier": "genius",
                "max_input_tokens": 640,
                "max_output_tokens": 64,
                "temperature": 0.1,
                "timeout_ms": 1800,
                "retry_limit": 1,
            },
        )
        self.assertEqual(put.status_code, 422)

    def test_call_logs_are_listed_newest_first_and_filtered(self) -> None:
        for idx, task in enumerate(("npc_line", "economy_plan", "npc_line")):
            insert_call_log(
                {
                    "id": f"log-{idx}",
                    "scope": "day:1",
                    "subject_id": "npc_alden",
                    "task_name": task,
                    "model_name": "heuristic:local",
                    "prompt_tokens": 10,
                    "completion_tokens": 5,
                    "latency_ms": 1,
                    "success": True,
                    "error_code": None,
                }
            )
        resp = self.client.get("/api/v1/llm/logs", params={"task_name": "npc_line", "limit": 20})
        self.assertEqual(resp.status_code, 200)
        payload = resp.json()
        self.assertEqual(payload["count"], 2)
        self.assertTrue(all(row["task_name"] == "npc_line" for row in payload["logs"]))
        self.assertTrue(all(row["success"] is True for row in payload["logs"]))
        self.assertEqual(payload["logs"][0]["scope"], "day:1")

    def test_apply_low_cost_preset_endpoint(self) -> None:
        resp = self.client.post("/api/v1/llm/presets/low-cost")
        self.assertEqual(resp.status_code, 200)
        payload = resp.json()
        self.assertTrue(payload["ok"])
        self.assertEqual(payload["preset"], "low-cost")
        self.assertTrue(all(p["model_tier"] == "cheap" for p in payload["policies"]))

    def test_apply_offline_preset_routes_everything_to_heuristic(self) -> None:
        resp = self.client.post("/api/v1/llm/presets/offline")
        self.assertEqual(resp.status_code, 200)
        listed = self.client.get("/api/v1/llm/policies").json()["policies"]
        self.assertTrue(all(p["model_tier"] == "heuristic" for p in listed))

    def test_unknown_preset_is_404(self) -> None:
        resp = self.client.post("/api/v1/llm/presets/free-lunch")
        self.assertEqual(resp.status_code, 404)

    def test_presets_are_listed(self) -> None:
        resp = self.client.get("/api/v1/llm/presets")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("situational-default", resp.json()["presets"])


if __name__ == "__main__":
    unittest.main()
