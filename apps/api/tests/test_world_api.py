#!/usr/bin/env python3

from __future__ import annotations

import os
import tempfile
import time
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[3]
TEST_DB_DIR = tempfile.TemporaryDirectory(dir=ROOT)
TEST_DB_PATH = Path(TEST_DB_DIR.name) / "test_world_lantern.db"
TEST_STATE_DIR = Path(TEST_DB_DIR.name) / "state"
os.environ["LANTERN_DB_PATH"] = str(TEST_DB_PATH)
os.environ["LANTERN_STATE_DIR"] = str(TEST_STATE_DIR)

from apps.api.lantern_api.main import app
from apps.api.lantern_api.routers.play import reset_rate_limiter_for_tests as reset_rate_limiter
from apps.api.lantern_api.services.runtime import get_engine
from apps.api.lantern_api.storage.llm_control import reset_backend_cache_for_tests as reset_llm_backend
from apps.api.lantern_api.storage.memories import reset_backend_cache_for_tests as reset_memories_backend
from packages.lantern_core.sim.persistence import WorldStateStore


def _wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class WorldApiTests(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["LANTERN_DB_PATH"] = str(TEST_DB_PATH)
        os.environ["LANTERN_STATE_DIR"] = str(TEST_STATE_DIR)
        os.environ.pop("LANTERN_AUTOSTART_RUNTIME", None)
        if TEST_DB_PATH.exists():
            TEST_DB_PATH.unlink()
        WorldStateStore().clear_all()
        reset_llm_backend()
        reset_memories_backend()
        reset_rate_limiter()

    def test_healthz_reports_ok(self) -> None:
        with TestClient(app) as client:
            resp = client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")

    def test_world_snapshot_lists_seeded_town(self) -> None:
        with TestClient(app) as client:
            resp = client.get("/api/v1/world")
        self.assertEqual(resp.status_code, 200)
        payload = resp.json()
        self.assertEqual(payload["day"], 1)
        self.assertEqual(payload["time_label"], "8:00 AM")
        self.assertEqual(len(payload["characters"]), 10)
        self.assertIsNone(payload["you"])

    def test_unknown_player_view_is_404(self) -> None:
        with TestClient(app) as client:
            resp = client.get("/api/v1/world/players/nobody")
        self.assertEqual(resp.status_code, 404)
        self.assertIn("detail", resp.json())

    def test_manual_tick_advances_clock(self) -> None:
        with TestClient(app) as client:
            resp = client.post("/api/v1/world/tick")
        self.assertEqual(resp.status_code, 200)
        payload = resp.json()
        self.assertEqual(payload["report"]["tick"], 1)
        self.assertFalse(payload["report"]["paused"])
        self.assertEqual(payload["time_label"], "8:05 AM")

    def test_manual_tick_while_runtime_runs_is_503(self) -> None:
        with TestClient(app) as client:
            started = client.post("/api/v1/world/runtime/start")
            self.assertEqual(started.status_code, 200)
            self.assertTrue(started.json()["status"]["running"])

            busy = client.post("/api/v1/world/tick")
            self.assertEqual(busy.status_code, 503)
            self.assertEqual(busy.headers.get("Retry-After"), "2")

            stopped = client.post("/api/v1/world/runtime/stop")
            self.assertTrue(stopped.json()["stopped"])
            self.assertFalse(stopped.json()["status"]["running"])

    def test_autosave_endpoint_writes_snapshot(self) -> None:
        with TestClient(app) as client:
            resp = client.post("/api/v1/world/autosave")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["ok"])
        self.assertTrue((TEST_STATE_DIR / "world.json").exists())

    def test_restart_restores_clock_from_snapshot(self) -> None:
        with TestClient(app) as client:
            client.post("/api/v1/world/tick")
            client.post("/api/v1/world/tick")
        with TestClient(app) as client:
            payload = client.get("/api/v1/world").json()
        self.assertEqual(payload["time_label"], "8:10 AM")
        self.assertEqual(payload["tick"], 2)

    def test_morning_summary_endpoint(self) -> None:
        with TestClient(app) as client:
            resp = client.get("/api/v1/world/morning")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["title"], "Morning Ledger - Day 1")
        self.assertIn("Quiet night", resp.json()["text"])


class PlaySocketTests(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["LANTERN_DB_PATH"] = str(TEST_DB_PATH)
        os.environ["LANTERN_STATE_DIR"] = str(TEST_STATE_DIR)
        if TEST_DB_PATH.exists():
            TEST_DB_PATH.unlink()
        WorldStateStore().clear_all()
        reset_llm_backend()
        reset_memories_backend()
        reset_rate_limiter()

    def test_connect_pushes_world_snapshot_and_player_view(self) -> None:
        with TestClient(app) as client:
            with client.websocket_connect("/ws/play?player_id=p-ana&name=Ana&gender=female") as ws:
                first = ws.receive_json()
                self.assertEqual(first["type"], "world_snapshot")
                self.assertEqual(first["world"]["you"]["name"], "Ana")
                self.assertEqual(first["world"]["you"]["gender"], "female")
                self.assertEqual(first["world"]["farm"]["coins"], 40)

                view = client.get("/api/v1/world/players/p-ana")
                self.assertEqual(view.status_code, 200)
                self.assertEqual(view.json()["you"]["player_id"], "p-ana")
            self.assertIn("p-ana", get_engine().world.profiles)

    def test_guest_profile_is_dropped_on_disconnect(self) -> None:
        with TestClient(app) as client:
            with client.websocket_connect("/ws/play?name=Drifter") as ws:
                first = ws.receive_json()
                guest_id = first["world"]["you"]["player_id"]
                self.assertTrue(guest_id.startswith("guest_"))
            engine = get_engine()
            self.assertTrue(_wait_until(lambda: guest_id not in engine.world.profiles))
            self.assertNotIn(guest_id, engine.world.farms)

    def test_invalid_payloads_get_feedback(self) -> None:
        with TestClient(app) as client:
            with client.websocket_connect("/ws/play?player_id=p-bad") as ws:
                ws.receive_json()
                ws.send_text("not json")
                feedback = ws.receive_json()
                self.assertEqual(feedback["type"], "feedback")
                self.assertFalse(feedback["ok"])

                ws.send_json({"type": "teleport"})
                self.assertIn("Unknown command", ws.receive_json()["message"])

                ws.send_json({"type": "move", "x": "left"})
                self.assertIn("Invalid move command", ws.receive_json()["message"])

    def test_farm_sow_sends_farm_feedback_then_world(self) -> None:
        with TestClient(app) as client:
            with client.websocket_connect("/ws/play?player_id=p-farmer") as ws:
                ws.receive_json()
                ws.send_json({"type": "farm", "plot_id": 2, "action": "sow", "crop_type": "turnip"})
                result = ws.receive_json()
                self.assertEqual(result["type"], "farm_feedback")
                self.assertTrue(result["ok"])
                self.assertEqual(result["plot_id"], 2)
                update = ws.receive_json()
                self.assertEqual(update["type"], "world_tick")
                plot = next(p for p in update["world"]["farm"]["plots"] if p["id"] == 2)
                self.assertEqual(plot["state"], "seeded")

    def test_commands_are_rate_limited_per_player(self) -> None:
        reset_rate_limiter(max_requests=2)
        with TestClient(app) as client:
            with client.websocket_connect("/ws/play?player_id=p-spam") as ws:
                ws.receive_json()
                ws.send_json({"type": "sleep", "sleeping": False})
                ws.send_json({"type": "sleep", "sleeping": False})
                ws.send_json({"type": "sleep", "sleeping": False})
                limited = ws.receive_json()
                self.assertEqual(limited["type"], "feedback")
                self.assertIn("Slow down", limited["message"])


if __name__ == "__main__":
    unittest.main()
