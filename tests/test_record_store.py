import io
import json
import unittest
import urllib.error
from unittest import mock

from errors import StorageError
from record_store import InMemoryRecordStore
from supabase_store import SupabaseRecordStore


class InMemoryRecordStoreTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryRecordStore()

    def _session(self, user="alice", name="Period 1"):
        return self.store.create_session({
            "userId": user,
            "sessionName": name,
            "marketState": {"timeStep": 0},
            "policyState": {"fedRate": 2.25},
        })

    def test_create_assigns_ids_and_defaults(self):
        first = self._session()
        second = self._session(name="Period 2")
        self.assertEqual((first["id"], second["id"]), (1, 2))
        self.assertEqual(first["currentRole"], "homebuyer")
        self.assertTrue(first["isActive"])
        self.assertEqual(first["gameState"], {"tutorial": {"completed": False, "step": 0}})
        self.assertIsNotNone(first["createdAt"])

    def test_create_requires_user(self):
        with self.assertRaises(StorageError):
            self.store.create_session({"sessionName": "orphan"})

    def test_rows_are_copies(self):
        row = self._session()
        row["marketState"]["timeStep"] = 99
        self.assertEqual(self.store.get_session(row["id"])["marketState"]["timeStep"], 0)

    def test_update_session_merges_and_protects_identity(self):
        row = self._session()
        updated = self.store.update_session(row["id"], {"currentRole": "investor", "id": 50, "createdAt": "x"})
        self.assertEqual(updated["id"], row["id"])
        self.assertEqual(updated["createdAt"], row["createdAt"])
        self.assertEqual(updated["currentRole"], "investor")
        self.assertEqual(updated["sessionName"], "Period 1")

    def test_update_unknown_session_raises(self):
        with self.assertRaises(StorageError) as ctx:
            self.store.update_session(9, {"currentRole": "investor"})
        self.assertEqual(ctx.exception.operation, "update_session")

    def test_get_unknown_session(self):
        self.assertIsNone(self.store.get_session(3))

    def test_find_active_session_prefers_latest(self):
        self._session()
        second = self._session(name="Period 2")
        self._session(user="bob")
        self.assertEqual(self.store.find_active_session("alice")["id"], second["id"])
        self.store.update_session(second["id"], {"isActive": False})
        self.assertEqual(self.store.find_active_session("alice")["id"], 1)
        self.assertIsNone(self.store.find_active_session("carol"))

    def test_decisions_and_events_are_per_session(self):
        self.store.record_decision({"sessionId": 1, "userId": "alice", "decisionType": "wait"})
        self.store.record_decision({"sessionId": 2, "userId": "bob", "decisionType": "purchase"})
        event = self.store.record_event({"sessionId": 1, "eventType": "homebuyer_wait"})

        self.assertEqual(event["id"], 1)
        self.assertIn("timestamp", event)
        self.assertEqual([d["userId"] for d in self.store.list_decisions(1)], ["alice"])
        self.assertEqual(len(self.store.list_events(1)), 1)
        self.assertEqual(self.store.list_events(2), [])
        self.assertEqual(self.store.counts(), {"sessions": 0, "decisions": 2, "events": 1})


class _FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def _ok(body):
    return _FakeResponse(json.dumps(body).encode("utf-8"))


class SupabaseRecordStoreTests(unittest.TestCase):
    def setUp(self):
        self.store = SupabaseRecordStore(url="https://db.example.co/", key="secret", timeout=3)

    def test_create_session_maps_columns(self):
        stored = {
            "id": 7, "user_id": "alice", "session_name": "Period 1", "current_role": "homebuyer",
            "game_state": {}, "market_state": {"timeStep": 0}, "policy_state": {}, "is_active": True,
            "created_at": "2026-01-01T00:00:00+00:00", "updated_at": "2026-01-01T00:00:00+00:00",
        }
        with mock.patch("urllib.request.urlopen", return_value=_ok([stored])) as urlopen:
            row = self.store.create_session({"userId": "alice", "sessionName": "Period 1",
                                             "marketState": {"timeStep": 0}, "ignored": 1})

        req = urlopen.call_args[0][0]
        self.assertEqual(req.full_url, "https://db.example.co/rest/v1/game_sessions")
        self.assertEqual(req.get_method(), "POST")
        self.assertEqual(req.get_header("Apikey"), "secret")
        self.assertEqual(req.get_header("Authorization"), "Bearer secret")
        self.assertEqual(req.get_header("Prefer"), "return=representation")
        self.assertEqual(urlopen.call_args[1]["timeout"], 3.0)
        body = json.loads(req.data.decode("utf-8"))
        self.assertEqual(body["user_id"], "alice")
        self.assertEqual(body["current_role"], "homebuyer")
        self.assertNotIn("ignored", body)

        self.assertEqual(row["id"], 7)
        self.assertEqual(row["sessionName"], "Period 1")
        self.assertEqual(row["marketState"], {"timeStep": 0})

    def test_get_session_query_and_missing_row(self):
        with mock.patch("urllib.request.urlopen", return_value=_ok([])) as urlopen:
            self.assertIsNone(self.store.get_session(4))
        url = urlopen.call_args[0][0].full_url
        self.assertIn("/rest/v1/game_sessions?", url)
        self.assertIn("id=eq.4", url)

    def test_update_session_patches_by_id(self):
        with mock.patch("urllib.request.urlopen",
                        return_value=_ok([{"id": 4, "current_role": "investor"}])) as urlopen:
            row = self.store.update_session(4, {"currentRole": "investor", "id": 99})
        req = urlopen.call_args[0][0]
        self.assertEqual(req.get_method(), "PATCH")
        self.assertIn("id=eq.4", req.full_url)
        body = json.loads(req.data.decode("utf-8"))
        self.assertEqual(body["current_role"], "investor")
        self.assertNotIn("id", body)
        self.assertIn("updated_at", body)
        self.assertEqual(row["currentRole"], "investor")

    def test_find_active_session_filters(self):
        with mock.patch("urllib.request.urlopen", return_value=_ok([{"id": 2, "user_id": "bob"}])) as urlopen:
            row = self.store.find_active_session("bob")
        url = urlopen.call_args[0][0].full_url
        self.assertIn("user_id=eq.bob", url)
        self.assertIn("is_active=eq.true", url)
        self.assertIn("order=updated_at.desc", url)
        self.assertEqual(row, {"id": 2, "userId": "bob"})

    def test_record_decision_and_event(self):
        with mock.patch("urllib.request.urlopen",
                        return_value=_ok([{"id": 1, "session_id": 3, "decision_type": "wait"}])) as urlopen:
            row = self.store.record_decision({"sessionId": 3, "decisionType": "wait", "marketContext": {}})
        self.assertTrue(urlopen.call_args[0][0].full_url.endswith("/rest/v1/student_decisions"))
        self.assertEqual(row, {"id": 1, "sessionId": 3, "decisionType": "wait"})

        with mock.patch("urllib.request.urlopen",
                        return_value=_ok([{"id": 5, "event_type": "homebuyer_wait", "triggered_by": "a"}])) as urlopen:
            row = self.store.record_event({"sessionId": 3, "eventType": "homebuyer_wait", "triggeredBy": "a"})
        body = json.loads(urlopen.call_args[0][0].data.decode("utf-8"))
        self.assertEqual(body, {"session_id": 3, "event_type": "homebuyer_wait", "triggered_by": "a"})
        self.assertEqual(row["triggeredBy"], "a")

    def test_list_events(self):
        rows = [{"id": 1, "event_type": "a"}, {"id": 2, "event_type": "b"}]
        with mock.patch("urllib.request.urlopen", return_value=_ok(rows)):
            self.assertEqual([e["eventType"] for e in self.store.list_events(3)], ["a", "b"])

    def test_http_error_raises_storage_error(self):
        err = urllib.error.HTTPError(
            "https://db.example.co/rest/v1/market_events", 500, "boom", {}, io.BytesIO(b"relation missing"),
        )
        with mock.patch("urllib.request.urlopen", side_effect=err):
            with self.assertLogs("supabase_store", level="WARNING"):
                with self.assertRaises(StorageError) as ctx:
                    self.store.record_event({"sessionId": 1, "eventType": "x"})
        self.assertEqual(ctx.exception.operation, "record_event")
        self.assertIn("500", str(ctx.exception))

    def test_network_error_raises_storage_error(self):
        with mock.patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
            with self.assertLogs("supabase_store", level="WARNING"):
                with self.assertRaises(StorageError):
                    self.store.get_session(1)

    def test_write_without_returned_row_is_an_error(self):
        with mock.patch("urllib.request.urlopen", return_value=_FakeResponse(b"")):
            with self.assertRaises(StorageError):
                self.store.record_decision({"sessionId": 1})

    def test_enabled_follows_config(self):
        with mock.patch("config.SUPABASE_URL", "https://x"), mock.patch("config.SUPABASE_KEY", "k"):
            self.assertTrue(SupabaseRecordStore.enabled())
        with mock.patch("config.SUPABASE_URL", ""):
            self.assertFalse(SupabaseRecordStore.enabled())


if __name__ == "__main__":
    unittest.main()
