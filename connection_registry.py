"""
connection_registry.py -- Live participant connections and fan-out.

Each connection owns a bounded outbound queue drained by its own writer
task.  send() and the broadcasts only enqueue, so a fan-out never suspends
the caller and lands in every queue before any other coroutine runs.

Delivery is at-most-once: frames for a closed, unknown or backed-up
connection are dropped and logged at DEBUG.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import config

logger = logging.getLogger(__name__)


def make_message(msg_type: str, payload: Any = None) -> dict:
    """Outbound envelope."""
    return {"type": msg_type, "payload": payload if payload is not None else {}}


def encode_message(message: dict) -> str:
    # Strict JSON: browsers reject NaN/Infinity literals.
    return json.dumps(message, allow_nan=False, separators=(",", ":"))


@dataclass
class Connection:
    connection_id: str
    transport: Any
    outbox: asyncio.Queue
    participant_id: str | None = None
    session_id: int | None = None
    role: str | None = None
    connected_at: float = field(default_factory=time.time)
    writer: asyncio.Task | None = None
    closed: bool = False
    sent: int = 0
    dropped: int = 0

    @property
    def authenticated(self) -> bool:
        return self.participant_id is not None

    def to_dict(self) -> dict:
        return {
            "connectionId": self.connection_id,
            "userId": self.participant_id,
            "sessionId": self.session_id,
            "role": self.role,
            "connectedAt": self.connected_at,
            "queued": self.outbox.qsize(),
            "sent": self.sent,
            "dropped": self.dropped,
        }


class ConnectionRegistry:
    def __init__(self, queue_size: int | None = None) -> None:
        self.queue_size = max(1, int(queue_size or config.OUTBOUND_QUEUE_SIZE))
        self._connections: dict[str, Connection] = {}
        self.total_dropped = 0

    # ------------------ Lifecycle ------------------

    def register(self, transport) -> Connection:
        """Create a connection for a freshly opened transport and start its writer."""
        conn = Connection(
            connection_id=uuid.uuid4().hex,
            transport=transport,
            outbox=asyncio.Queue(maxsize=self.queue_size),
        )
        conn.writer = asyncio.create_task(
            self._writer_loop(conn), name=f"ws-writer-{conn.connection_id[:8]}"
        )
        self._connections[conn.connection_id] = conn
        logger.info("Connection %s opened (%d live)", conn.connection_id[:8], len(self._connections))
        return conn

    def bind(self, connection_id: str, participant_id: str) -> Connection | None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.participant_id = participant_id
        return conn

    def join(self, connection_id: str, session_id: int, role: str) -> Connection | None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.session_id = session_id
            conn.role = role
        return conn

    def set_role(self, connection_id: str, role: str) -> Connection | None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.role = role
        return conn

    def unregister(self, connection_id: str) -> Connection | None:
        """Remove a connection and stop its writer.  Safe to call twice."""
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return None
        conn.closed = True
        if conn.writer is not None and not conn.writer.done():
            conn.writer.cancel()
        logger.info(
            "Connection %s closed (user=%s session=%s, %d live)",
            connection_id[:8], conn.participant_id, conn.session_id, len(self._connections),
        )
        return conn

    async def _writer_loop(self, conn: Connection) -> None:
        while True:
            frame = await conn.outbox.get()
            try:
                if conn.closed:
                    continue
                await conn.transport.send(frame)
                conn.sent += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Transport gone mid-send; the inbound loop will unregister it.
                conn.closed = True
                logger.debug("Send to %s failed: %s", conn.connection_id[:8], e)
            finally:
                conn.outbox.task_done()

    # ------------------ Lookup ------------------

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def session_connections(self, session_id: int) -> list[Connection]:
        return [c for c in list(self._connections.values()) if c.session_id == session_id]

    def session_ids(self) -> set[int]:
        return {c.session_id for c in list(self._connections.values()) if c.session_id is not None}

    def __len__(self) -> int:
        return len(self._connections)

    # ------------------ Delivery ------------------

    def _enqueue(self, conn: Connection, frame: str) -> bool:
        if conn.closed:
            return False
        try:
            conn.outbox.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            conn.dropped += 1
            self.total_dropped += 1
            logger.debug("Outbound queue full for %s; frame dropped", conn.connection_id[:8])
            return False

    def send(self, connection_id: str, message: dict) -> bool:
        """Queue one message for one connection.  Never raises."""
        conn = self._connections.get(connection_id)
        if conn is None:
            logger.debug("Send to unknown connection %s dropped", str(connection_id)[:8])
            return False
        try:
            frame = encode_message(message)
        except (TypeError, ValueError) as e:
            logger.warning("Unencodable %s message dropped: %s", message.get("type"), e)
            return False
        return self._enqueue(conn, frame)

    def broadcast_to_session(self, session_id: int, message: dict,
                             exclude_connection_id: str | None = None) -> int:
        """Queue a message for every connection joined to a session."""
        try:
            frame = encode_message(message)
        except (TypeError, ValueError) as e:
            logger.warning("Unencodable %s broadcast dropped: %s", message.get("type"), e)
            return 0
        delivered = 0
        for conn in self.session_connections(session_id):
            if conn.connection_id == exclude_connection_id:
                continue
            if self._enqueue(conn, frame):
                delivered += 1
        return delivered

    def broadcast_all(self, message: dict) -> int:
        try:
            frame = encode_message(message)
        except (TypeError, ValueError) as e:
            logger.warning("Unencodable %s broadcast dropped: %s", message.get("type"), e)
            return 0
        return sum(1 for conn in self.connections() if self._enqueue(conn, frame))

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait until every live outbound queue is empty.  False on timeout."""
        waits = [c.outbox.join() for c in self.connections() if not c.closed]
        if not waits:
            return True
        try:
            await asyncio.wait_for(asyncio.gather(*waits), timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Outbound drain timed out after %.1fs", timeout or 0.0)
            return False

    async def close_all(self, code: int = 1001, reason: str = "server shutdown") -> None:
        """Unregister every connection and close its transport."""
        conns = self.connections()
        writers = []
        for conn in conns:
            self.unregister(conn.connection_id)
            if conn.writer is not None:
                writers.append(conn.writer)
        for conn in conns:
            try:
                await conn.transport.close(code, reason)
            except Exception as e:
                logger.debug("Close of %s failed: %s", conn.connection_id[:8], e)
        if writers:
            await asyncio.gather(*writers, return_exceptions=True)

    def stats(self) -> dict:
        conns = self.connections()
        return {
            "connections": len(conns),
            "authenticated": sum(1 for c in conns if c.authenticated),
            "joined": sum(1 for c in conns if c.session_id is not None),
            "droppedFrames": self.total_dropped,
        }
