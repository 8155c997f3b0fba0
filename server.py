"""
server.py -- Housing market simulator server.

Websocket front door for the classroom simulation:
- one inbound loop per connection, dispatching JSON envelopes by type
- per-session serialization handled by the SessionCoordinator
- periodic market broadcasts from a PeriodicTicker
- read-only HTTP endpoints (/healthz, /api/status, /api/historical-data)
  served on the same port
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import signal
import time
from http import HTTPStatus
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, urlsplit

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

import config
import historical_data
from connection_registry import Connection, ConnectionRegistry, make_message
from errors import AuthRequiredError, ProtocolError, SimulationError, ValidationError
from record_store import InMemoryRecordStore, RecordSink
from session_coordinator import SessionCoordinator
from supabase_store import SupabaseRecordStore
from ticker import PeriodicTicker


logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SEC = 2.0


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def build_sink() -> RecordSink:
    if SupabaseRecordStore.enabled():
        logger.info("Record sink: Supabase (%s)", config.SUPABASE_URL)
        return SupabaseRecordStore()
    logger.info("Record sink: in-memory (set SUPABASE_URL/SUPABASE_KEY to persist)")
    return InMemoryRecordStore()


def _reject_constant(name: str):
    raise ProtocolError(f"Invalid message format: {name} is not allowed")


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise ProtocolError("Invalid message format: number out of range")
    return value


def parse_envelope(raw: str | bytes) -> tuple[str, dict]:
    """Decode one inbound frame into (type, payload)."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError("Invalid message format") from e
    try:
        message = json.loads(raw, parse_constant=_reject_constant, parse_float=_finite_float)
    except ValueError as e:
        raise ProtocolError("Invalid message format") from e
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        raise ProtocolError("Invalid message format")
    payload = message.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ProtocolError("Invalid message format")
    return message["type"], payload


def _session_id(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError("sessionId must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValidationError("sessionId must be an integer")


Handler = Callable[[Connection, dict], Awaitable[None]]


class SimulationServer:
    def __init__(
        self,
        sink: RecordSink | None = None,
        registry: ConnectionRegistry | None = None,
        tick_interval_sec: float | None = None,
    ) -> None:
        self.registry = registry or ConnectionRegistry()
        self.sink = sink or build_sink()
        self.coordinator = SessionCoordinator(self.sink, self.registry)
        self.ticker = PeriodicTicker(tick_interval_sec, self.coordinator.broadcast_periodic)
        self.started_at = time.time()
        self.messages_handled = 0
        self.messages_rejected = 0
        self._handlers: dict[str, Handler] = {
            "authenticate": self._on_authenticate,
            "join_session": self._on_join_session,
            "player_action": self._on_player_action,
            "switch_role": self._on_switch_role,
            "request_historical_data": self._on_request_historical_data,
            "reset_simulation": self._on_reset_simulation,
            "export_session": self._on_export_session,
        }

    # ------------------ Transport ------------------

    async def handle_connection(self, websocket: ServerConnection) -> None:
        conn = self.registry.register(websocket)
        try:
            async for raw in websocket:
                await self.handle_message(conn.connection_id, raw)
        except ConnectionClosed as e:
            logger.debug("Connection %s dropped: %s", conn.connection_id[:8], e)
        finally:
            self.registry.unregister(conn.connection_id)

    async def handle_message(self, connection_id: str, raw: str | bytes) -> None:
        """Process one inbound frame.  Errors go back to the sender only."""
        conn = self.registry.get(connection_id)
        if conn is None:
            return
        msg_type = None
        try:
            msg_type, payload = parse_envelope(raw)
            handler = self._handlers.get(msg_type)
            if handler is None:
                raise ProtocolError(f"Unknown message type: {msg_type}")
            await handler(conn, payload)
            self.messages_handled += 1
        except SimulationError as e:
            self.messages_rejected += 1
            logger.warning("Rejected %s from %s: %s", msg_type or "frame", connection_id[:8], e.message)
            self._send_error(connection_id, e.message)
        except Exception:
            self.messages_rejected += 1
            logger.exception("Unhandled error processing %s from %s", msg_type, connection_id[:8])
            self._send_error(connection_id, "internal server error")

    def _send_error(self, connection_id: str, message: str) -> None:
        self.registry.send(connection_id, make_message("error", {"message": message}))

    @staticmethod
    def _require_joined(conn: Connection) -> int:
        if conn.participant_id is None or conn.session_id is None:
            raise AuthRequiredError("Must join a session first")
        return conn.session_id

    # ------------------ Message handlers ------------------

    async def _on_authenticate(self, conn: Connection, payload: dict) -> None:
        user_id = payload.get("userId")
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("userId required")
        user_id = user_id.strip()
        self.registry.bind(conn.connection_id, user_id)

        active = await self.coordinator.find_active_session(user_id)
        self.registry.send(conn.connection_id, make_message("authentication_success", {
            "userId": user_id,
            "sessionId": active.get("id") if active else None,
            "role": active.get("currentRole") if active else None,
        }))
        logger.info("Connection %s authenticated as %s", conn.connection_id[:8], user_id)

    async def _on_join_session(self, conn: Connection, payload: dict) -> None:
        if conn.participant_id is None:
            raise AuthRequiredError("Must authenticate first")
        session_id = _session_id(payload.get("sessionId"))
        session_name = payload.get("sessionName")
        if session_name is not None and not isinstance(session_name, str):
            raise ValidationError("sessionName must be a string")
        await self.coordinator.create_or_join(
            conn.participant_id,
            conn.connection_id,
            session_id=session_id,
            session_name=(session_name or "").strip() or None,
        )

    async def _on_player_action(self, conn: Connection, payload: dict) -> None:
        session_id = self._require_joined(conn)
        action_type = payload.get("actionType")
        if not isinstance(action_type, str) or not action_type:
            raise ValidationError("actionType required")
        outcome = await self.coordinator.submit_action(
            session_id,
            conn.participant_id,
            conn.role,
            action_type,
            payload.get("parameters"),
        )
        self.registry.send(conn.connection_id, make_message("historical_comparison", outcome.comparison))
        if outcome.storage_error is not None:
            self._send_error(conn.connection_id, f"Action applied but not saved: {outcome.storage_error.message}")

    async def _on_switch_role(self, conn: Connection, payload: dict) -> None:
        session_id = self._require_joined(conn)
        await self.coordinator.switch_role(
            session_id, conn.participant_id, conn.connection_id, payload.get("role"),
        )

    async def _on_request_historical_data(self, conn: Connection, payload: dict) -> None:
        session_id = self._require_joined(conn)
        data = await self.coordinator.request_historical_data(session_id, payload.get("quarter"))
        self.registry.send(conn.connection_id, make_message("historical_data", data))

    async def _on_reset_simulation(self, conn: Connection, payload: dict) -> None:
        session_id = self._require_joined(conn)
        await self.coordinator.reset_simulation(session_id, payload.get("quarter"))

    async def _on_export_session(self, conn: Connection, payload: dict) -> None:
        session_id = self._require_joined(conn)
        export = await self.coordinator.export_session(session_id)
        self.registry.send(conn.connection_id, make_message("session_export", export))

    # ------------------ HTTP ------------------

    def status_payload(self) -> dict:
        return {
            "uptimeSec": round(time.time() - self.started_at, 1),
            "messagesHandled": self.messages_handled,
            "messagesRejected": self.messages_rejected,
            "connections": self.registry.stats(),
            "ticker": self.ticker.stats(),
            "coordinator": self.coordinator.status(),
        }

    def route_http(self, path: str) -> tuple[HTTPStatus, Any] | None:
        """
        Resolve a plain HTTP GET.  None means "continue the websocket
        handshake"; otherwise (status, body) where a dict body is JSON.
        """
        parts = urlsplit(path)
        if parts.path == config.WS_PATH:
            return None
        if parts.path == "/healthz":
            return HTTPStatus.OK, "ok\n"
        if parts.path == "/api/status":
            return HTTPStatus.OK, self.status_payload()
        if parts.path == "/api/historical-data":
            query = parse_qs(parts.query)
            try:
                start = int(query.get("startYear", [historical_data.FIRST_YEAR])[0])
                end = int(query.get("endYear", [historical_data.LAST_YEAR])[0])
            except ValueError:
                return HTTPStatus.BAD_REQUEST, {"message": "startYear/endYear must be integers"}
            return HTTPStatus.OK, historical_data.historical_dataset(start, end)
        return HTTPStatus.NOT_FOUND, {"message": "not found"}

    def process_request(self, connection: ServerConnection, request):
        routed = self.route_http(request.path)
        if routed is None:
            return None
        status, body = routed
        if isinstance(body, str):
            return connection.respond(status, body)
        response = connection.respond(status, json.dumps(body) + "\n")
        del response.headers["Content-Type"]
        response.headers["Content-Type"] = "application/json"
        response.headers["Cache-Control"] = "no-store"
        return response

    # ------------------ Lifecycle ------------------

    async def shutdown(self, reason: str = "server stopping") -> None:
        logger.info("Shutting down: %s", reason)
        await self.ticker.stop()
        self.registry.broadcast_all(make_message("server_shutdown", {"reason": reason}))
        await self.registry.drain(SHUTDOWN_DRAIN_SEC)
        await self.registry.close_all()


async def serve_forever(
    host: str | None = None,
    port: int | None = None,
    sink: RecordSink | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    app = SimulationServer(sink=sink)
    stop = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(signum, _frame=None):
        logger.info("Signal %s received", signum)
        loop.call_soon_threadsafe(stop.set)

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal, sig)
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, _handle_signal)

    async with serve(
        app.handle_connection,
        host if host is not None else config.HOST,
        port if port is not None else config.PORT,
        process_request=app.process_request,
        max_size=config.MAX_MESSAGE_BYTES,
    ):
        app.ticker.start()
        logger.info(
            "Listening on ws://%s:%d%s",
            host if host is not None else config.HOST,
            port if port is not None else config.PORT,
            config.WS_PATH,
        )
        try:
            await stop.wait()
        finally:
            await app.shutdown("server stopping")


def run() -> None:
    setup_logging()
    config.print_banner()
    try:
        asyncio.run(serve_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    run()
