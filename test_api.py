import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from roundtable import main, storage
from test_orchestrator import FakeLLM


def parse_events(body):
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


class TestSessionApi(unittest.TestCase):

    def setUp(self):
        self.data_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.data_dir, ignore_errors=True)
        patcher = patch('roundtable.storage.DATA_DIR', self.data_dir)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.llm = FakeLLM()
        for target in ('roundtable.panel.query_model', 'roundtable.synthesis.query_model'):
            patcher = patch(target, new=self.llm)
            patcher.start()
            self.addCleanup(patcher.stop)
        title = patch('roundtable.main.generate_conversation_title', new=AsyncMock(return_value="Trial Review"))
        title.start()
        self.addCleanup(title.stop)

        self.client = TestClient(main.app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def create_session(self):
        response = self.client.post("/api/sessions", json={})
        self.assertEqual(response.status_code, 200)
        return response.json()["id"]

    def test_health(self):
        self.assertEqual(self.client.get("/").json()["status"], "ok")

    def test_session_lifecycle(self):
        session_id = self.create_session()

        listed = self.client.get("/api/sessions").json()
        self.assertEqual([s["id"] for s in listed], [session_id])
        self.assertEqual(listed[0]["message_count"], 0)
        self.assertEqual(self.client.get(f"/api/sessions/{session_id}").json()["title"], "New Session")

        self.assertEqual(self.client.delete(f"/api/sessions/{session_id}").json(), {"status": "deleted"})
        self.assertEqual(self.client.get(f"/api/sessions/{session_id}").status_code, 404)
        self.assertEqual(self.client.delete(f"/api/sessions/{session_id}").status_code, 404)

    def test_unknown_session(self):
        response = self.client.post("/api/sessions/missing/message/stream", json={"content": "Hi"})

        self.assertEqual(response.status_code, 404)

    def test_document_upload(self):
        session_id = self.create_session()

        response = self.client.post(
            f"/api/sessions/{session_id}/documents",
            files=[
                ("files", ("trials.csv", b"duration_days\n10\n20\n", "text/csv")),
                ("files", ("notes.txt", b"skip me", "text/plain")),
            ],
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"added": ["trials.csv"], "skipped": ["notes.txt"], "has_tabular": True})
        stored = self.client.get(f"/api/sessions/{session_id}").json()
        self.assertEqual(stored["documents"]["csv"][0]["filename"], "trials.csv")

    def test_stream_runs_turn_and_persists(self):
        session_id = self.create_session()

        response = self.client.post(
            f"/api/sessions/{session_id}/message/stream",
            json={"content": "Was the trial well designed?"},
        )

        self.assertEqual(response.status_code, 200)
        events = parse_events(response.text)
        types = [event["type"] for event in events]
        self.assertEqual(types[0], "loading")
        for expected in ("route", "experts_complete", "answer_complete", "mindmaps_complete",
                         "followups_complete", "idle", "title_complete"):
            self.assertIn(expected, types)
        self.assertEqual(types[-1], "complete")
        self.assertEqual(events[-1]["data"]["final_answer"], "Synthesized answer")

        main._orchestrators.clear()
        stored = self.client.get(f"/api/sessions/{session_id}").json()
        self.assertEqual(stored["title"], "Trial Review")
        self.assertEqual([m["role"] for m in stored["messages"]], ["user", "assistant"])
        self.assertEqual(len(stored["panel"]), 3)

    def test_failed_turn_streams_error_then_idle(self):
        session_id = self.create_session()
        self.llm.panel_error = RuntimeError("rate limited")

        events = parse_events(self.client.post(
            f"/api/sessions/{session_id}/message/stream",
            json={"content": "Was the trial well designed?"},
        ).text)

        types = [event["type"] for event in events]
        self.assertLess(types.index("error"), types.index("idle"))
        self.assertIn("Failed to identify experts", events[types.index("error")]["message"])

    def test_related_question_and_finalmap(self):
        session_id = self.create_session()
        self.assertEqual(self.client.get(f"/api/sessions/{session_id}/finalmap").status_code, 400)
        self.assertEqual(
            self.client.post(f"/api/sessions/{session_id}/related-question", json={"node_text": "Safety"}).status_code,
            400,
        )

        self.client.post(f"/api/sessions/{session_id}/message/stream", json={"content": "Was the trial well designed?"})

        with patch('roundtable.synthesis.query_model', new=AsyncMock(return_value='"How was safety monitored?"')):
            response = self.client.post(
                f"/api/sessions/{session_id}/related-question", json={"node_text": "Safety"}
            )
        self.assertEqual(response.json(), {"question": "How was safety monitored?"})

        mind = '{"meta": {"name": "Roundtable"}, "data": {"topic": "Trial design", "children": []}}'
        with patch('roundtable.synthesis.query_model', new=AsyncMock(return_value=mind)):
            response = self.client.get(f"/api/sessions/{session_id}/finalmap")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["format"], "node_tree")

    def test_shutdown_closes_orchestrators(self):
        orchestrator = AsyncMock()
        with TestClient(main.app):
            main._orchestrators["live"] = orchestrator

        orchestrator.close.assert_awaited_once()
        self.assertEqual(main._orchestrators, {})


class TestSessionStorage(unittest.TestCase):

    def setUp(self):
        self.data_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.data_dir, ignore_errors=True)
        patcher = patch('roundtable.storage.DATA_DIR', self.data_dir)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_unreadable_files_are_skipped_when_listing(self):
        storage.create_session("good")
        with open(os.path.join(self.data_dir, "broken.json"), "w") as f:
            f.write("{not json")

        self.assertEqual([s["id"] for s in storage.list_sessions()], ["good"])

    def test_save_leaves_no_temp_file(self):
        session = storage.create_session("s1")
        session["title"] = "Renamed"
        storage.save_session(session)

        self.assertEqual(os.listdir(self.data_dir), ["s1.json"])
        self.assertEqual(storage.get_session("s1")["title"], "Renamed")

    def test_missing_session(self):
        self.assertIsNone(storage.get_session("nope"))
        self.assertEqual(storage.list_sessions(), [])
        with self.assertRaises(ValueError):
            storage.update_session_title("nope", "Title")
        with self.assertRaises(ValueError):
            storage.delete_session("nope")


if __name__ == "__main__":
    unittest.main()
