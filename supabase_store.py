"""
supabase_store.py -- Supabase (PostgREST) record sink for the simulator.

Provides cloud persistence for game sessions, student decisions and market
events so a classroom's history survives restarts (ephemeral filesystem).

PATTERN:
  - Uses urllib.request only (no HTTP client dependency)
  - Every call is synchronous; the coordinator runs it in a worker thread
  - Failures raise errors.StorageError (the coordinator decides what to do)
  - Rows are mapped between camelCase wire keys and snake_case columns

TABLES:
  game_sessions      id, user_id, session_name, current_role, game_state,
                     market_state, policy_state, is_active, created_at,
                     updated_at
  student_decisions  id, session_id, user_id, role, decision_type,
                     decision_data, market_context, timestamp
  market_events      id, session_id, event_type, event_data, triggered_by,
                     impact, timestamp

SETUP:
  1. Create a Supabase project (free tier)
  2. Create the three tables above (jsonb for the *_state/*_data/impact/
     market_context columns, serial ids, timestamps defaulting to now())
  3. Set SUPABASE_URL and SUPABASE_KEY env vars
"""

import json
import logging
import urllib.request
import urllib.error
import urllib.parse

import config
from errors import StorageError
from record_store import RecordSink, utc_now_iso

logger = logging.getLogger(__name__)

SESSIONS_PATH = "/rest/v1/game_sessions"
DECISIONS_PATH = "/rest/v1/student_decisions"
EVENTS_PATH = "/rest/v1/market_events"

# ---------------------------------------------------------------------------
# Column mapping
# ---------------------------------------------------------------------------

_SESSION_COLUMNS = {
    "id": "id",
    "userId": "user_id",
    "sessionName": "session_name",
    "currentRole": "current_role",
    "gameState": "game_state",
    "marketState": "market_state",
    "policyState": "policy_state",
    "isActive": "is_active",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}

_DECISION_COLUMNS = {
    "id": "id",
    "sessionId": "session_id",
    "userId": "user_id",
    "role": "role",
    "decisionType": "decision_type",
    "decisionData": "decision_data",
    "marketContext": "market_context",
    "timestamp": "timestamp",
}

_EVENT_COLUMNS = {
    "id": "id",
    "sessionId": "session_id",
    "eventType": "event_type",
    "eventData": "event_data",
    "triggeredBy": "triggered_by",
    "impact": "impact",
    "timestamp": "timestamp",
}


def _to_columns(row: dict, mapping: dict) -> dict:
    """Wire row -> table row.  Unknown keys are dropped."""
    return {mapping[k]: v for k, v in row.items() if k in mapping}


def _from_columns(row: dict, mapping: dict) -> dict:
    """Table row -> wire row."""
    reverse = {col: key for key, col in mapping.items()}
    return {reverse[c]: v for c, v in row.items() if c in reverse}


def _first_row(result, operation: str) -> dict:
    if isinstance(result, list) and result and isinstance(result[0], dict):
        return result[0]
    if isinstance(result, dict) and result:
        return result
    raise StorageError(f"Supabase returned no row for {operation}", operation=operation)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SupabaseRecordStore(RecordSink):
    """PostgREST-backed RecordSink."""

    def __init__(self, url: str = None, key: str = None, timeout: float = None):
        self.url = (url if url is not None else config.SUPABASE_URL).rstrip("/")
        self.key = key if key is not None else config.SUPABASE_KEY
        self.timeout = float(timeout if timeout is not None else config.SUPABASE_TIMEOUT_SEC)

    @staticmethod
    def enabled() -> bool:
        """Return True if Supabase is configured."""
        return bool(config.SUPABASE_URL and config.SUPABASE_KEY)

    # ------------------ Core HTTP helper ------------------

    def _request(self, method: str, path: str, body: dict = None,
                 params: dict = None, operation: str = ""):
        """
        Make a PostgREST request to Supabase.

        Args:
            method:    HTTP method (GET, POST, PATCH)
            path:      Table path, e.g. "/rest/v1/game_sessions"
            body:      JSON body for POST/PATCH
            params:    Query params dict
            operation: Sink operation name, carried on StorageError

        Returns:
            Parsed JSON response (list or dict); {} for an empty body.

        Raises:
            StorageError on HTTP, network or decode failure.
        """
        url = self.url + path
        if params:
            url += "?" + urllib.parse.urlencode(params, doseq=True)

        headers = {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            # Writes echo the stored row so ids and timestamps come back.
            "Prefer": "return=representation",
            "User-Agent": "HousingSim/1.0",
        }

        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")

        req = urllib.request.Request(url, data=data, headers=headers, method=method)

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                resp_body = resp.read().decode("utf-8")
                if resp_body:
                    return json.loads(resp_body)
                return {}
        except urllib.error.HTTPError as e:
            err_body = e.read().decode("utf-8", errors="replace")[:200]
            logger.warning("Supabase %s %s HTTP %d: %s", method, path, e.code, err_body)
            raise StorageError(f"Supabase HTTP {e.code}", operation=operation) from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.warning("Supabase %s %s failed: %s", method, path, e)
            raise StorageError(f"Supabase request failed: {e}", operation=operation) from e

    # ------------------ Sessions ------------------

    def create_session(self, row: dict) -> dict:
        payload = _to_columns(row, _SESSION_COLUMNS)
        payload.pop("id", None)
        payload.setdefault("current_role", "homebuyer")
        payload.setdefault("is_active", True)
        payload.setdefault("game_state", {"tutorial": {"completed": False, "step": 0}})
        result = self._request("POST", SESSIONS_PATH, body=payload, operation="create_session")
        created = _from_columns(_first_row(result, "create_session"), _SESSION_COLUMNS)
        logger.info("Supabase: created session %s for %s", created.get("id"), created.get("userId"))
        return created

    def get_session(self, session_id: int):
        params = {"select": "*", "id": f"eq.{int(session_id)}", "limit": "1"}
        result = self._request("GET", SESSIONS_PATH, params=params, operation="get_session")
        if not isinstance(result, list) or not result:
            return None
        return _from_columns(result[0], _SESSION_COLUMNS)

    def update_session(self, session_id: int, partial: dict) -> dict:
        payload = _to_columns(partial, _SESSION_COLUMNS)
        payload.pop("id", None)
        payload.pop("created_at", None)
        payload["updated_at"] = utc_now_iso()
        params = {"id": f"eq.{int(session_id)}"}
        result = self._request("PATCH", SESSIONS_PATH, body=payload, params=params,
                               operation="update_session")
        return _from_columns(_first_row(result, "update_session"), _SESSION_COLUMNS)

    def find_active_session(self, user_id: str):
        params = {
            "select": "*",
            "user_id": f"eq.{user_id}",
            "is_active": "eq.true",
            "order": "updated_at.desc",
            "limit": "1",
        }
        result = self._request("GET", SESSIONS_PATH, params=params,
                               operation="find_active_session")
        if not isinstance(result, list) or not result:
            return None
        return _from_columns(result[0], _SESSION_COLUMNS)

    # ------------------ Append-only logs ------------------

    def record_decision(self, entry: dict) -> dict:
        payload = _to_columns(entry, _DECISION_COLUMNS)
        payload.pop("id", None)
        result = self._request("POST", DECISIONS_PATH, body=payload, operation="record_decision")
        return _from_columns(_first_row(result, "record_decision"), _DECISION_COLUMNS)

    def record_event(self, entry: dict) -> dict:
        payload = _to_columns(entry, _EVENT_COLUMNS)
        payload.pop("id", None)
        result = self._request("POST", EVENTS_PATH, body=payload, operation="record_event")
        return _from_columns(_first_row(result, "record_event"), _EVENT_COLUMNS)

    def list_decisions(self, session_id: int) -> list:
        params = {"select": "*", "session_id": f"eq.{int(session_id)}", "order": "id.asc"}
        result = self._request("GET", DECISIONS_PATH, params=params, operation="list_decisions")
        if not isinstance(result, list):
            return []
        return [_from_columns(r, _DECISION_COLUMNS) for r in result]

    def list_events(self, session_id: int) -> list:
        params = {"select": "*", "session_id": f"eq.{int(session_id)}", "order": "id.asc"}
        result = self._request("GET", EVENTS_PATH, params=params, operation="list_events")
        if not isinstance(result, list):
            return []
        return [_from_columns(r, _EVENT_COLUMNS) for r in result]
