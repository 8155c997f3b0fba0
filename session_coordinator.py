"""
session_coordinator.py -- Per-session engines, serialization and fan-out.

One SessionRuntime per loaded session:
- the authoritative SimulationEngine for that session (never shared)
- an asyncio.Lock that serializes everything touching it

Inside the lock an action is validated, applied, advanced one quarter,
persisted through the record sink and queued to every participant of the
session, so broadcast order is application order.  Different sessions
never contend.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import config
import market_engine as me
from connection_registry import ConnectionRegistry, make_message
from errors import (
    SessionNotFoundError,
    SimulationError,
    StorageError,
    ValidationError,
)
from record_store import RecordSink


logger = logging.getLogger(__name__)

DEFAULT_ROLE = "homebuyer"


def default_game_state() -> dict:
    return {"tutorial": {"completed": False, "step": 0}}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SessionRecord:
    session_id: int
    owner_id: str
    display_name: str
    current_role: str = DEFAULT_ROLE
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None
    market_state: dict = field(default_factory=dict)
    policy_state: dict = field(default_factory=dict)
    game_state: dict = field(default_factory=default_game_state)

    @classmethod
    def from_row(cls, row: dict) -> "SessionRecord":
        return cls(
            session_id=int(row["id"]),
            owner_id=str(row.get("userId") or ""),
            display_name=str(row.get("sessionName") or ""),
            current_role=str(row.get("currentRole") or DEFAULT_ROLE),
            is_active=bool(row.get("isActive", True)),
            created_at=row.get("createdAt"),
            updated_at=row.get("updatedAt"),
            market_state=dict(row.get("marketState") or {}),
            policy_state=dict(row.get("policyState") or {}),
            game_state=dict(row.get("gameState") or default_game_state()),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.session_id,
            "userId": self.owner_id,
            "sessionName": self.display_name,
            "currentRole": self.current_role,
            "isActive": self.is_active,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "marketState": dict(self.market_state),
            "policyState": dict(self.policy_state),
            "gameState": dict(self.game_state),
        }


@dataclass
class SessionRuntime:
    record: SessionRecord
    engine: me.SimulationEngine
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    actions_processed: int = 0
    last_activity: float = field(default_factory=time.time)
    # Set while no participant is connected.
    vacant_since: float | None = None

    @property
    def session_id(self) -> int:
        return self.record.session_id

    def market_dict(self) -> dict:
        return me.market_to_dict(self.engine.market)

    def policy_dict(self) -> dict:
        return me.policy_to_dict(self.engine.policy)

    def sync_record(self) -> None:
        self.record.market_state = self.market_dict()
        self.record.policy_state = self.policy_dict()


@dataclass
class ActionOutcome:
    events: list[dict]
    market: dict
    policy: dict
    comparison: dict
    storage_error: StorageError | None = None


def _coerce_quarter(quarter: Any) -> float | None:
    if quarter is None:
        return None
    if isinstance(quarter, bool) or not isinstance(quarter, (int, float)):
        raise ValidationError("quarter must be a finite number")
    # NaN and infinities fail the range check.
    if not me.HISTORICAL_QUARTER_MIN <= quarter <= me.HISTORICAL_QUARTER_MAX:
        raise ValidationError(
            f"quarter must be between {me.HISTORICAL_QUARTER_MIN:g} and {me.HISTORICAL_QUARTER_MAX:g}"
        )
    return float(quarter)


class SessionCoordinator:
    def __init__(
        self,
        sink: RecordSink,
        registry: ConnectionRegistry,
        idle_evict_sec: float | None = None,
    ) -> None:
        self.sink = sink
        self.registry = registry
        self.idle_evict_sec = float(
            idle_evict_sec if idle_evict_sec is not None else config.SESSION_IDLE_EVICT_SEC
        )
        self._sessions: dict[int, SessionRuntime] = {}
        self._load_lock = asyncio.Lock()
        self.started_at = time.time()
        self.actions_processed = 0
        self.storage_failures = 0
        self.sessions_evicted = 0

    # ------------------ Sink access ------------------

    async def _sink(self, method: str, *args):
        """Run a blocking sink call in a worker thread."""
        fn = getattr(self.sink, method)
        try:
            return await asyncio.to_thread(fn, *args)
        except StorageError:
            self.storage_failures += 1
            raise
        except Exception as e:
            self.storage_failures += 1
            logger.warning("Record sink %s failed: %s", method, e)
            raise StorageError(str(e) or e.__class__.__name__, operation=method) from e

    async def _persist_state(self, rt: SessionRuntime, extra: dict | None = None) -> StorageError | None:
        partial = {"marketState": rt.market_dict(), "policyState": rt.policy_dict()}
        if extra:
            partial.update(extra)
        try:
            row = await self._sink("update_session", rt.session_id, partial)
        except StorageError as e:
            logger.warning("Session %d: state not persisted (%s)", rt.session_id, e)
            return e
        if isinstance(row, dict) and row.get("updatedAt"):
            rt.record.updated_at = row["updatedAt"]
        return None

    # ------------------ Loading ------------------

    async def _load(self, session_id: int) -> SessionRuntime:
        rt = self._sessions.get(session_id)
        if rt is not None:
            return rt
        async with self._load_lock:
            # Another join may have hydrated it while we waited.
            rt = self._sessions.get(session_id)
            if rt is not None:
                return rt
            row = await self._sink("get_session", session_id)
            if not row:
                raise SessionNotFoundError(session_id)
            record = SessionRecord.from_row(row)
            engine = me.SimulationEngine.from_snapshot(record.market_state, record.policy_state)
            rt = SessionRuntime(record=record, engine=engine)
            rt.sync_record()
            self._sessions[session_id] = rt
            logger.info("Session %d loaded from %s (t=%.2f)", session_id, self.sink.name,
                        engine.market.time_step)
            return rt

    async def _create(self, owner_id: str, session_name: str) -> SessionRuntime:
        market, policy, _ = me.initialize()
        row = {
            "userId": owner_id,
            "sessionName": session_name,
            "currentRole": DEFAULT_ROLE,
            "isActive": True,
            "gameState": default_game_state(),
            "marketState": me.market_to_dict(market),
            "policyState": me.policy_to_dict(policy),
        }
        created = await self._sink("create_session", row)
        record = SessionRecord.from_row(created)
        rt = SessionRuntime(record=record, engine=me.SimulationEngine(market, policy))
        rt.sync_record()
        self._sessions[record.session_id] = rt
        logger.info("Session %d '%s' created by %s", record.session_id, session_name, owner_id)
        return rt

    def _require(self, session_id: int) -> SessionRuntime:
        rt = self._sessions.get(session_id)
        if rt is None:
            raise SessionNotFoundError(session_id)
        return rt

    # ------------------ Joining ------------------

    async def create_or_join(
        self,
        participant_id: str,
        connection_id: str,
        session_id: int | None = None,
        session_name: str | None = None,
    ) -> SessionRecord:
        if session_id is not None:
            rt = await self._load(session_id)
        elif session_name:
            rt = await self._create(participant_id, session_name)
        else:
            raise ValidationError("sessionId or sessionName required")

        async with rt.lock:
            role = rt.record.current_role
            rt.vacant_since = None
            self.registry.join(connection_id, rt.session_id, role)
            rt.sync_record()
            self.registry.send(connection_id, make_message("session_joined", {
                "session": rt.record.to_dict(),
                "marketState": rt.market_dict(),
                "policyState": rt.policy_dict(),
            }))
            self.registry.broadcast_to_session(
                rt.session_id,
                make_message("player_joined", {"userId": participant_id, "role": role}),
                exclude_connection_id=connection_id,
            )
            rt.last_activity = time.time()
        logger.info("User %s joined session %d as %s", participant_id, rt.session_id, role)
        return rt.record

    async def find_active_session(self, user_id: str) -> dict | None:
        try:
            return await self._sink("find_active_session", user_id)
        except StorageError as e:
            logger.warning("Active session lookup for %s failed: %s", user_id, e)
            return None

    # ------------------ Actions ------------------

    async def submit_action(
        self,
        session_id: int,
        participant_id: str,
        role: str,
        action_type: str,
        parameters: dict | None,
    ) -> ActionOutcome:
        if parameters is not None and not isinstance(parameters, dict):
            raise ValidationError("parameters must be an object")
        action = me.Action(
            participant_id=participant_id,
            role=role,
            action_type=str(action_type or ""),
            parameters=dict(parameters or {}),
        )
        me.validate_action(action)
        rt = self._require(session_id)

        async with rt.lock:
            try:
                result = me.process(rt.engine.market, rt.engine.policy, action)
            except SimulationError:
                raise
            except Exception as e:
                logger.exception("Session %d: %s/%s failed in the engine", session_id, role, action_type)
                raise ValidationError(f"Action {action.action_type} could not be applied") from e

            rt.engine.restore(result.new_state, result.policy)
            rt.sync_record()
            rt.actions_processed += 1
            rt.last_activity = time.time()
            self.actions_processed += 1

            market = rt.market_dict()
            policy = rt.policy_dict()
            events = [dict(me.event_to_dict(e), sessionId=session_id) for e in result.events]

            storage_error = await self._record_action(rt, action, market, events)

            self.registry.broadcast_to_session(session_id, make_message("market_update", {
                "marketState": market,
                "policyState": policy,
                "events": events,
                "triggeredBy": participant_id,
            }))
            comparison = rt.engine.get_historical_comparison()

        return ActionOutcome(
            events=events,
            market=market,
            policy=policy,
            comparison=comparison,
            storage_error=storage_error,
        )

    async def _record_action(self, rt: SessionRuntime, action: me.Action,
                             market: dict, events: list[dict]) -> StorageError | None:
        try:
            await self._sink("record_decision", {
                "sessionId": rt.session_id,
                "userId": action.participant_id,
                "role": action.role,
                "decisionType": action.action_type,
                "decisionData": dict(action.parameters),
                "marketContext": market,
            })
            for event in events:
                await self._sink("record_event", event)
        except StorageError as e:
            logger.warning("Session %d: %s not recorded (%s)", rt.session_id, action.action_type, e)
            return e
        return await self._persist_state(rt)

    # ------------------ Roles ------------------

    async def switch_role(self, session_id: int, participant_id: str,
                          connection_id: str, new_role: Any) -> str:
        if new_role not in me.ROLES:
            raise ValidationError(f"Unknown role: {new_role}")
        rt = self._require(session_id)
        async with rt.lock:
            rt.record.current_role = new_role
            self.registry.set_role(connection_id, new_role)
            storage_error = None
            try:
                await self._sink("update_session", session_id, {"currentRole": new_role})
            except StorageError as e:
                logger.warning("Session %d: role change not persisted (%s)", session_id, e)
                storage_error = e
            self.registry.send(connection_id, make_message("role_switched", {"role": new_role}))
            self.registry.broadcast_to_session(
                session_id,
                make_message("player_role_changed", {"userId": participant_id, "role": new_role}),
                exclude_connection_id=connection_id,
            )
        if storage_error is not None:
            raise storage_error
        return new_role

    # ------------------ Historical ------------------

    async def historical_comparison(self, session_id: int) -> dict:
        return self._require(session_id).engine.get_historical_comparison()

    async def request_historical_data(self, session_id: int, quarter: Any = None) -> dict:
        """
        Comparison plus market state.  A quarter jumps the session to that
        period without broadcasting; participants see it on the next update.
        """
        q = _coerce_quarter(quarter)
        rt = self._require(session_id)
        async with rt.lock:
            if q is not None:
                rt.engine.reset_to_historical_period(q)
                rt.sync_record()
            return {
                "comparison": rt.engine.get_historical_comparison(),
                "marketState": rt.market_dict(),
            }

    async def reset_simulation(self, session_id: int, quarter: Any = None) -> dict:
        q = _coerce_quarter(quarter)
        rt = self._require(session_id)
        async with rt.lock:
            if q is not None:
                rt.engine.reset_to_historical_period(q)
            rt.sync_record()
            storage_error = await self._persist_state(rt)
            payload = {
                "marketState": rt.market_dict(),
                "policyState": rt.policy_dict(),
                "quarter": quarter if q is not None else None,
            }
            self.registry.broadcast_to_session(session_id, make_message("simulation_reset", payload))
            logger.info("Session %d reset (quarter=%s)", session_id, q)
        if storage_error is not None:
            raise storage_error
        return payload

    # ------------------ Read side ------------------

    async def snapshot(self, session_id: int) -> dict:
        rt = await self._load(session_id)
        return {"marketState": rt.market_dict(), "policyState": rt.policy_dict()}

    async def export_session(self, session_id: int) -> dict:
        rt = self._require(session_id)
        async with rt.lock:
            rt.sync_record()
            session = rt.record.to_dict()
        decisions = await self._sink("list_decisions", session_id)
        events = await self._sink("list_events", session_id)
        return {
            "session": session,
            "decisions": decisions,
            "events": events,
            "exportedAt": _now_iso(),
        }

    def active_session_ids(self) -> list[int]:
        return sorted(self._sessions)

    def evict_idle(self, now: float | None = None) -> list[int]:
        """
        Drop runtimes that have had no connected participant for at least
        idle_evict_sec.  Stored rows stay; a later join reloads them.
        """
        now = now if now is not None else time.time()
        attended = set(self.registry.session_ids())
        evicted = []
        for session_id, rt in list(self._sessions.items()):
            if session_id in attended:
                rt.vacant_since = None
                continue
            if rt.vacant_since is None:
                rt.vacant_since = now
                continue
            if rt.lock.locked() or now - rt.vacant_since < self.idle_evict_sec:
                continue
            del self._sessions[session_id]
            evicted.append(session_id)
        if evicted:
            self.sessions_evicted += len(evicted)
            logger.info("Evicted idle sessions: %s", ", ".join(str(s) for s in evicted))
        return evicted

    async def broadcast_periodic(self, now: float | None = None) -> int:
        """
        Push the current state to every session with connected participants,
        then evict sessions that have stayed empty.
        """
        now = now if now is not None else time.time()
        timestamp = datetime.fromtimestamp(now, timezone.utc).isoformat()
        sent = 0
        for session_id in sorted(self.registry.session_ids()):
            rt = self._sessions.get(session_id)
            if rt is None:
                continue
            if rt.lock.locked():
                # An action is mid-flight; its own market_update supersedes this tick.
                logger.debug("Session %d busy; periodic update skipped", session_id)
                continue
            self.registry.broadcast_to_session(session_id, make_message("periodic_market_update", {
                "marketState": rt.market_dict(),
                "policyState": rt.policy_dict(),
                "timestamp": timestamp,
            }))
            sent += 1
        self.evict_idle(now)
        return sent

    def status(self) -> dict:
        sessions = []
        for sid in self.active_session_ids():
            rt = self._sessions[sid]
            sessions.append({
                "id": sid,
                "sessionName": rt.record.display_name,
                "participants": len(self.registry.session_connections(sid)),
                "timeStep": rt.engine.market.time_step,
                "bubbleRisk": rt.engine.market.bubble_risk,
                "actionsProcessed": rt.actions_processed,
            })
        return {
            "uptimeSec": round(time.time() - self.started_at, 1),
            "storage": self.sink.name,
            "actionsProcessed": self.actions_processed,
            "storageFailures": self.storage_failures,
            "sessionsEvicted": self.sessions_evicted,
            "sessions": sessions,
        }
