"""
record_store.py -- Record sink contract and the in-memory store.

The sink is append-only for decisions and events, and simple CRUD for
sessions.  Rows cross this boundary in their camelCase wire form:

  session:   {id, userId, sessionName, currentRole, isActive, createdAt,
              updatedAt, marketState, policyState, gameState}
  decision:  {id, sessionId, userId, role, decisionType, decisionData,
              marketContext, timestamp}
  event:     {id, sessionId, eventType, eventData, triggeredBy, impact,
              timestamp}

Failures raise errors.StorageError.  Calls are synchronous; the coordinator
runs them off the event loop.
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Any

from errors import StorageError

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RecordSink:
    """Interface implemented by every record store."""

    def create_session(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_session(self, session_id: int) -> dict[str, Any] | None:
        raise NotImplementedError

    def update_session(self, session_id: int, partial: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def record_decision(self, entry: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def record_event(self, entry: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def find_active_session(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_decisions(self, session_id: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    def list_events(self, session_id: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @property
    def name(self) -> str:
        return self.__class__.__name__


class InMemoryRecordStore(RecordSink):
    """
    Process-local store.  Everything is lost on restart; ids are assigned
    sequentially per table starting at 1.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[int, dict[str, Any]] = {}
        self._decisions: list[dict[str, Any]] = []
        self._events: list[dict[str, Any]] = []
        self._next_session_id = 1
        self._next_decision_id = 1
        self._next_event_id = 1

    # ------------------ Sessions ------------------

    def create_session(self, row: dict[str, Any]) -> dict[str, Any]:
        if not str(row.get("userId") or ""):
            raise StorageError("session row requires userId", operation="create_session")
        now = utc_now_iso()
        with self._lock:
            sid = self._next_session_id
            self._next_session_id += 1
            stored = copy.deepcopy(dict(row))
            stored["id"] = sid
            stored.setdefault("currentRole", "homebuyer")
            stored.setdefault("isActive", True)
            stored.setdefault("gameState", {"tutorial": {"completed": False, "step": 0}})
            stored["createdAt"] = now
            stored["updatedAt"] = now
            self._sessions[sid] = stored
        logger.debug("In-memory session %d created for %s", sid, stored["userId"])
        return copy.deepcopy(stored)

    def get_session(self, session_id: int) -> dict[str, Any] | None:
        with self._lock:
            row = self._sessions.get(int(session_id))
            return copy.deepcopy(row) if row is not None else None

    def update_session(self, session_id: int, partial: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            row = self._sessions.get(int(session_id))
            if row is None:
                raise StorageError(f"unknown session {session_id}", operation="update_session")
            for key, value in partial.items():
                if key in ("id", "createdAt"):
                    continue
                row[key] = copy.deepcopy(value)
            row["updatedAt"] = utc_now_iso()
            return copy.deepcopy(row)

    def find_active_session(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            rows = [
                r for r in self._sessions.values()
                if r.get("userId") == user_id and r.get("isActive")
            ]
            if not rows:
                return None
            # Most recently updated wins; id breaks ties for identical stamps.
            latest = max(rows, key=lambda r: (str(r.get("updatedAt") or ""), int(r["id"])))
            return copy.deepcopy(latest)

    # ------------------ Append-only logs ------------------

    def record_decision(self, entry: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            stored = copy.deepcopy(dict(entry))
            stored["id"] = self._next_decision_id
            stored["timestamp"] = utc_now_iso()
            self._next_decision_id += 1
            self._decisions.append(stored)
            return copy.deepcopy(stored)

    def record_event(self, entry: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            stored = copy.deepcopy(dict(entry))
            stored["id"] = self._next_event_id
            stored["timestamp"] = utc_now_iso()
            self._next_event_id += 1
            self._events.append(stored)
            return copy.deepcopy(stored)

    def list_decisions(self, session_id: int) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._decisions if d.get("sessionId") == session_id]

    def list_events(self, session_id: int) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._events if e.get("sessionId") == session_id]

    # ------------------ Introspection ------------------

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {
                "sessions": len(self._sessions),
                "decisions": len(self._decisions),
                "events": len(self._events),
            }
