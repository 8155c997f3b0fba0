"""
config.py -- All tunable parameters for the housing market simulator.

Every value here is loaded from environment variables so you can configure
the server from the hosting dashboard (or a local .env file) without touching
code.

HOW TO READ THIS FILE:
  Each config value has a comment explaining:
    1. What it controls
    2. What happens if you raise/lower it
    3. The default and why it was chosen
"""

import os

# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        # Special handling for booleans -- "true"/"1"/"yes" are all truthy
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw)
    except (ValueError, TypeError):
        return default


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

# Bind address.  0.0.0.0 so the server is reachable inside a container.
HOST: str = _env("HOST", "0.0.0.0")

# Listen port for both the websocket and the read-only HTTP endpoints.
# Most hosts inject PORT; 5000 matches the classroom front-end dev proxy.
PORT: int = _env("PORT", 5000, int)

# Websocket upgrade path.  Requests on any other path are answered as plain
# HTTP (health, status, historical data) or 404.
WS_PATH: str = _env("WS_PATH", "/ws")

# Largest inbound text frame accepted, in bytes.  Action envelopes are tiny;
# anything bigger is almost certainly a broken client.  Oversized frames
# close the connection.
MAX_MESSAGE_BYTES: int = _env("MAX_MESSAGE_BYTES", 65536, int)

# Per-connection outbound queue bound.  A participant whose browser stalls
# stops receiving updates once this many frames are waiting; frames beyond
# it are dropped (at-most-once delivery) instead of growing memory.
OUTBOUND_QUEUE_SIZE: int = _env("OUTBOUND_QUEUE_SIZE", 256, int)

# ---------------------------------------------------------------------------
# Simulation cadence
# ---------------------------------------------------------------------------

# Seconds between periodic_market_update broadcasts to every active session.
# Lower = livelier dashboards but more frames; 30s keeps a classroom of
# thirty laptops quiet while still showing the market is alive.
TICK_INTERVAL_SEC: float = _env("TICK_INTERVAL_SEC", 30.0, float)

# Seconds a loaded session may sit with no connected participants before its
# engine is dropped from memory.  The stored row is untouched, so a later
# join reloads it.  Checked on every periodic tick.
SESSION_IDLE_EVICT_SEC: float = _env("SESSION_IDLE_EVICT_SEC", 600.0, float)

# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

# Supabase (PostgREST) -- cloud persistence for sessions, decisions, events.
# If not set, the server keeps records in memory only (lost on restart).
SUPABASE_URL: str = _env("SUPABASE_URL", "")
SUPABASE_KEY: str = _env("SUPABASE_KEY", "")

# Per-request timeout for Supabase calls.  A slow call blocks only the
# session that issued it.
SUPABASE_TIMEOUT_SEC: float = _env("SUPABASE_TIMEOUT_SEC", 10.0, float)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

# Python logging level name (DEBUG, INFO, WARNING, ...).
LOG_LEVEL: str = _env("LOG_LEVEL", "INFO").upper()


def print_banner():
    """Print a startup summary so you can verify config at a glance."""
    storage = "supabase" if (SUPABASE_URL and SUPABASE_KEY) else "in-memory"
    lines = [
        "=" * 60,
        "  HOUSING MARKET SIMULATOR",
        "=" * 60,
        f"  Listen:          {HOST}:{PORT}  (ws path {WS_PATH})",
        f"  Tick interval:   {TICK_INTERVAL_SEC:g}s",
        f"  Idle eviction:   {SESSION_IDLE_EVICT_SEC:g}s",
        f"  Max frame:       {MAX_MESSAGE_BYTES} bytes",
        f"  Outbound queue:  {OUTBOUND_QUEUE_SIZE} frames/connection",
        f"  Storage:         {storage}",
        f"  Log level:       {LOG_LEVEL}",
        "=" * 60,
    ]
    print("\n".join(lines))
