import asyncio
import json
import unittest
from http import HTTPStatus
from unittest import mock

from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedOK
from websockets.http11 import Response

import server
from errors import ProtocolError, StorageError
from fakes import FakeTransport, FlakyRecordStore


def _frame(msg_type, payload=None):
    return json.dumps({"type": msg_type, "payload": payload or {}})


class ScriptedSocket(FakeTransport):
    """Inbound frames from a script, then stays open until released."""

    def __init__(self, script, close_with=None):
        super().__init__()
        self.script = list(script)
        self.close_with = close_with
        self.release = asyncio.Event()

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for frame in self.script:
            yield frame
        if self.close_with is not None:
            raise self.close_with
        await self.release.wait()


class FakeHandshake:
    def respond(self, status, text):
        headers = Headers([("Content-Type", "text/plain; charset=utf-8")])
        return Response(status.value, status.phrase, headers, text.encode("utf-8"))


class FakeRequest:
    def __init__(self, path):
        self.path = path


class ServerTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.sink = FlakyRecordStore()
        self.app = server.SimulationServer(sink=self.sink, tick_interval_sec=60)

    async def asyncTearDown(self):
        await self.app.ticker.stop()
        await self.app.registry.close_all()

    def _connect(self):
        transport = FakeTransport()
        conn = self.app.registry.register(transport)
        return conn.connection_id, transport

    async def _send(self, cid, msg_type, payload=None):
        await self.app.handle_message(cid, _frame(msg_type, payload))
        await self.app.registry.drain(2.0)

    def _errors(self, transport):
        return [m["payload"]["message"] for m in transport.messages("error")]

    async def _joined(self, user, session_name=None, session_id=None):
        cid, transport = self._connect()
        await self._send(cid, "authenticate", {"userId": user})
        if session_name:
            await self._send(cid, "join_session", {"sessionName": session_name})
        else:
            await self._send(cid, "join_session", {"sessionId": session_id})
        return cid, transport


class ProtocolErrorTests(ServerTestCase):
    async def test_invalid_json(self):
        cid, transport = self._connect()
        with self.assertLogs("server", level="WARNING"):
            await self.app.handle_message(cid, "{not json")
        await self.app.registry.drain(1.0)
        self.assertEqual(self._errors(transport), ["Invalid message format"])

    async def test_malformed_envelopes(self):
        cid, transport = self._connect()
        for raw in ('[1, 2]', '{"payload": {}}', '{"type": "authenticate", "payload": [1]}', b"\xff\xfe"):
            await self.app.handle_message(cid, raw)
        await self.app.registry.drain(1.0)
        self.assertEqual(self._errors(transport), ["Invalid message format"] * 4)

    async def test_unknown_message_type(self):
        cid, transport = self._connect()
        await self._send(cid, "dance")
        self.assertEqual(self._errors(transport), ["Unknown message type: dance"])

    async def test_join_before_authenticate(self):
        cid, transport = self._connect()
        await self._send(cid, "join_session", {"sessionName": "x"})
        self.assertEqual(self._errors(transport), ["Must authenticate first"])

    async def test_session_messages_before_join(self):
        cid, transport = self._connect()
        await self._send(cid, "authenticate", {"userId": "alice"})
        for msg_type in ("player_action", "switch_role", "reset_simulation",
                         "request_historical_data", "export_session"):
            await self._send(cid, msg_type, {"actionType": "wait", "role": "investor"})
        self.assertEqual(self._errors(transport), ["Must join a session first"] * 5)

    async def test_authenticate_requires_user_id(self):
        cid, transport = self._connect()
        await self._send(cid, "authenticate", {"userId": "   "})
        self.assertEqual(self._errors(transport), ["userId required"])

    async def test_join_unknown_session(self):
        _, transport = await self._joined("alice", session_id=77)
        self.assertEqual(self._errors(transport), ["Session not found"])

    async def test_bad_session_id(self):
        _, transport = await self._joined("alice", session_id="abc")
        self.assertEqual(self._errors(transport), ["sessionId must be an integer"])

    async def test_connection_survives_errors(self):
        cid, transport = await self._joined("alice", session_name="Period 1")
        await self._send(cid, "player_action", {"actionType": "purchase", "parameters": {"price": 1}})
        await self._send(cid, "player_action", {"actionType": "wait", "parameters": {}})
        self.assertEqual(len(self._errors(transport)), 1)
        self.assertEqual(len(transport.messages("market_update")), 1)

    async def test_unexpected_exception_is_reported_generically(self):
        cid, transport = await self._joined("alice", session_name="Period 1")
        with mock.patch.object(self.app.coordinator, "submit_action", side_effect=RuntimeError("kaboom")):
            with self.assertLogs("server", level="ERROR"):
                await self._send(cid, "player_action", {"actionType": "wait"})
        self.assertEqual(self._errors(transport), ["internal server error"])
        self.assertEqual(self.app.messages_rejected, 1)


class SessionFlowTests(ServerTestCase):
    async def test_authenticate_reports_active_session(self):
        cid, transport = self._connect()
        await self._send(cid, "authenticate", {"userId": "alice"})
        self.assertEqual(
            transport.messages("authentication_success")[0]["payload"],
            {"userId": "alice", "sessionId": None, "role": None},
        )

        await self._send(cid, "join_session", {"sessionName": "Period 1"})
        cid2, transport2 = self._connect()
        await self._send(cid2, "authenticate", {"userId": "alice"})
        payload = transport2.messages("authentication_success")[0]["payload"]
        self.assertEqual(payload["sessionId"], 1)
        self.assertEqual(payload["role"], "homebuyer")
        # Not joined until join_session.
        self.assertIsNone(self.app.registry.get(cid2).session_id)

    async def test_two_participants_action_round_trip(self):
        a, ta = await self._joined("alice", session_name="Period 2")
        b, tb = await self._joined("bob", session_id="1")
        await self._send(a, "switch_role", {"role": "investor"})
        await self._send(a, "player_action", {
            "actionType": "buy_properties",
            "parameters": {"quantity": 5, "leverage": 80},
        })

        self.assertEqual(ta.types(), [
            "authentication_success", "session_joined", "player_joined",
            "role_switched", "market_update", "historical_comparison",
        ])
        self.assertEqual(tb.types(), [
            "authentication_success", "session_joined",
            "player_role_changed", "market_update",
        ])
        ua = ta.messages("market_update")[0]["payload"]
        ub = tb.messages("market_update")[0]["payload"]
        self.assertEqual(ua, ub)
        self.assertAlmostEqual(ua["events"][0]["impact"]["bubbleRiskIncrease"], 40.0)
        self.assertEqual(ua["triggeredBy"], "alice")
        comparison = ta.messages("historical_comparison")[0]["payload"]
        self.assertEqual(comparison["historicalEvent"], "Low interest rates, Loose lending standards")

    async def test_storage_failure_reported_to_actor_only(self):
        a, ta = await self._joined("alice", session_name="Period 2")
        b, tb = await self._joined("bob", session_id=1)
        self.sink.failing.add("record_event")
        await self._send(a, "player_action", {"actionType": "wait", "parameters": {"reason": "rates"}})

        self.assertEqual(self._errors(ta), ["Action applied but not saved: database unavailable"])
        self.assertEqual(self._errors(tb), [])
        self.assertEqual(len(tb.messages("market_update")), 1)

    async def test_non_finite_json_literals_are_rejected(self):
        a, ta = await self._joined("alice", session_name="Period 2")
        b, tb = await self._joined("bob", session_id=1)
        await self._send(a, "switch_role", {"role": "investor"})
        frames = (
            '{"type": "player_action", "payload": {"actionType": "securitize", "parameters": {"x": NaN}}}',
            '{"type": "player_action", "payload": {"actionType": "securitize", "parameters": {"x": -Infinity}}}',
            '{"type": "player_action", "payload": {"actionType": "securitize", "parameters": {"x": 1e999}}}',
        )
        for raw in frames:
            await self.app.handle_message(a, raw)
        await self.app.registry.drain(2.0)

        errors = self._errors(ta)
        self.assertEqual(len(errors), 3)
        for message in errors:
            self.assertTrue(message.startswith("Invalid message format"), message)
        self.assertEqual(tb.messages("market_update"), [])
        snapshot = await self.app.coordinator.snapshot(1)
        self.assertEqual(snapshot["marketState"]["timeStep"], 0)

    async def test_out_of_range_values_get_an_error_and_no_update(self):
        a, ta = await self._joined("alice", session_name="Period 2")
        b, tb = await self._joined("bob", session_id=1)
        await self._send(a, "switch_role", {"role": "regulator"})
        await self._send(a, "player_action", {"actionType": "set_fed_rate", "parameters": {"rate": 1e308}})
        await self._send(a, "reset_simulation", {"quarter": -10})
        await self._send(a, "reset_simulation", {"quarter": 1e308})

        errors = self._errors(ta)
        self.assertEqual(len(errors), 3)
        self.assertIn("out of range", errors[0])
        self.assertIn("quarter must be between", errors[1])
        self.assertEqual(tb.messages("market_update"), [])
        self.assertEqual(tb.messages("simulation_reset"), [])

        await self._send(a, "player_action", {"actionType": "set_fed_rate", "parameters": {"rate": 4.0}})
        self.assertEqual(len(tb.messages("market_update")), 1)

    async def test_historical_data_and_reset(self):
        a, ta = await self._joined("alice", session_name="Period 4")
        b, tb = await self._joined("bob", session_id=1)

        await self._send(a, "request_historical_data", {"quarter": 12})
        data = ta.messages("historical_data")[0]["payload"]
        self.assertEqual(data["marketState"]["bubbleRisk"], 75)
        self.assertEqual(tb.messages("historical_data"), [])

        await self._send(b, "reset_simulation", {"quarter": 4})
        for transport in (ta, tb):
            reset = transport.messages("simulation_reset")[0]["payload"]
            self.assertEqual(reset["quarter"], 4)
            self.assertEqual(reset["marketState"]["bubbleRisk"], 40)
            self.assertEqual(reset["marketState"]["priceGrowth"], 20)

    async def test_export_session(self):
        a, ta = await self._joined("alice", session_name="Period 5")
        await self._send(a, "player_action", {"actionType": "wait", "parameters": {}})
        await self._send(a, "export_session")
        export = ta.messages("session_export")[0]["payload"]
        self.assertEqual(export["session"]["sessionName"], "Period 5")
        self.assertEqual(len(export["decisions"]), 1)


class TransportTests(ServerTestCase):
    async def _wait_for(self, predicate, timeout=2.0):
        async def _poll():
            while not predicate():
                await asyncio.sleep(0.01)
        await asyncio.wait_for(_poll(), timeout)

    async def test_inbound_loop_dispatches_and_unregisters(self):
        sock = ScriptedSocket([_frame("authenticate", {"userId": "alice"}), _frame("dance")])
        task = asyncio.create_task(self.app.handle_connection(sock))
        await self._wait_for(lambda: len(sock.frames) == 2)
        self.assertEqual(sock.types(), ["authentication_success", "error"])
        self.assertEqual(len(self.app.registry), 1)

        sock.release.set()
        await task
        self.assertEqual(len(self.app.registry), 0)

    async def test_peer_close_unregisters(self):
        sock = ScriptedSocket([], close_with=ConnectionClosedOK(None, None))
        await self.app.handle_connection(sock)
        self.assertEqual(len(self.app.registry), 0)

    async def test_shutdown_notifies_and_closes(self):
        _, ta = await self._joined("alice", session_name="Period 6")
        _, tb = self._connect()
        await self.app.shutdown("maintenance")
        for transport in (ta, tb):
            self.assertEqual(transport.messages("server_shutdown")[0]["payload"], {"reason": "maintenance"})
            self.assertEqual(transport.closed, (1001, "server shutdown"))
        self.assertEqual(len(self.app.registry), 0)


class HttpRouteTests(unittest.TestCase):
    def setUp(self):
        self.app = server.SimulationServer(sink=FlakyRecordStore(), tick_interval_sec=60)

    def test_websocket_path_continues_handshake(self):
        self.assertIsNone(self.app.route_http("/ws"))
        self.assertIsNone(self.app.route_http("/ws?token=abc"))

    def test_healthz(self):
        self.assertEqual(self.app.route_http("/healthz"), (HTTPStatus.OK, "ok\n"))

    def test_status(self):
        status, body = self.app.route_http("/api/status")
        self.assertEqual(status, HTTPStatus.OK)
        self.assertEqual(body["connections"]["connections"], 0)
        self.assertFalse(body["ticker"]["running"])
        self.assertEqual(body["coordinator"]["sessions"], [])

    def test_historical_data_filtering(self):
        status, body = self.app.route_http("/api/historical-data?startYear=2008&endYear=2008")
        self.assertEqual(status, HTTPStatus.OK)
        self.assertEqual(len(body["priceData"]), 4)
        self.assertEqual(body["priceData"][2]["medianPrice"], 208000)
        self.assertEqual(body["priceData"][0]["timeStep"], 12)
        self.assertEqual([e["event"] for e in body["events"]][-1], "TARP bailout program enacted")

        status, body = self.app.route_http("/api/historical-data")
        self.assertEqual(len(body["priceData"]), 20)
        self.assertEqual(len(body["fedRateData"]), 20)

    def test_historical_data_bad_years(self):
        status, _ = self.app.route_http("/api/historical-data?startYear=soon")
        self.assertEqual(status, HTTPStatus.BAD_REQUEST)

    def test_unknown_path(self):
        status, _ = self.app.route_http("/admin")
        self.assertEqual(status, HTTPStatus.NOT_FOUND)

    def test_process_request_serves_json(self):
        response = self.app.process_request(FakeHandshake(), FakeRequest("/api/historical-data"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers.get_all("Content-Type"), ["application/json"])
        self.assertEqual(len(json.loads(response.body)["events"]), 8)

    def test_process_request_plain_text_and_passthrough(self):
        response = self.app.process_request(FakeHandshake(), FakeRequest("/healthz"))
        self.assertEqual(response.body, b"ok\n")
        self.assertIsNone(self.app.process_request(FakeHandshake(), FakeRequest("/ws")))


class EnvelopeTests(unittest.TestCase):
    def test_parse_envelope_defaults_payload(self):
        self.assertEqual(server.parse_envelope('{"type": "export_session"}'), ("export_session", {}))

    def test_parse_envelope_rejects_non_finite_numbers(self):
        for raw in ('{"type": "x", "payload": {"v": NaN}}',
                    '{"type": "x", "payload": {"v": Infinity}}',
                    '{"type": "x", "payload": {"v": -1e400}}'):
            with self.assertRaises(ProtocolError):
                server.parse_envelope(raw)
        self.assertEqual(server.parse_envelope('{"type": "x", "payload": {"v": 1.5}}'), ("x", {"v": 1.5}))

    def test_session_id_coercion(self):
        self.assertEqual(server._session_id("12"), 12)
        self.assertEqual(server._session_id(3.0), 3)
        self.assertIsNone(server._session_id(None))

    def test_build_sink_defaults_to_memory(self):
        with mock.patch.object(server.SupabaseRecordStore, "enabled", return_value=False):
            self.assertEqual(server.build_sink().name, "InMemoryRecordStore")

    def test_storage_error_message(self):
        self.assertEqual(StorageError().message, "storage failure")


if __name__ == "__main__":
    unittest.main()
