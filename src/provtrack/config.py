"""Configuration and directory management for provtrack."""

import os
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


PROVTRACK_DIR = Path(os.environ.get("PROVTRACK_HOME", Path.home() / ".provtrack"))
DB_PATH = Path(os.environ.get("PROVTRACK_DB", PROVTRACK_DIR / "provtrack.db"))

# Organization stamped on sessions started through the MCP server
ORGANIZATION_ID = os.environ.get("PROVTRACK_ORGANIZATION_ID", "default-org")

LOG_LEVEL = os.environ.get("PROVTRACK_LOG_LEVEL", "INFO")
LOG_JSON = os.environ.get("PROVTRACK_LOG_JSON", "").lower() in ("1", "true", "yes")

# Sessions
SESSION_TTL_SECONDS = 24 * 60 * 60
RECENT_WINDOW = 100
ENVIRONMENTS = ("development", "staging", "production", "testing", "local")

# Batch persistence
BATCH_SIZE = _env_int("PROVTRACK_BATCH_SIZE", 100)
FLUSH_INTERVAL = _env_float("PROVTRACK_FLUSH_INTERVAL", 1.0)
MAX_BACKOFF = _env_float("PROVTRACK_MAX_BACKOFF", 30.0)
WRITE_TIMEOUT = _env_float("PROVTRACK_WRITE_TIMEOUT", 10.0)
INSIGHT_THRESHOLD = 3

# Lineage graph
MAX_DEPTH = 20
HOP_DECAY = 0.95
DEFAULT_TREE_DEPTH = 10
PATHS_PER_TREE = 100
CRITICAL_CONFIDENCE = 0.8
IMPACT_CACHE_TTL = 60 * 60

# Background maintenance intervals (seconds)
CACHE_CLEANUP_INTERVAL = 5 * 60
SESSION_SWEEP_INTERVAL = 10 * 60
INTEGRITY_AUDIT_INTERVAL = 15 * 60

# Real-time channels
CHANNEL_NEW_EVENTS = "events:new"
CHANNEL_CALCULATIONS = "calculations:queue"


def stream_channel(organization_id: str) -> str:
    """Per-organization channel carrying full event records."""
    return f"events:stream:{organization_id}"


def ensure_dirs() -> None:
    """Ensure the provtrack data directory exists."""
    PROVTRACK_DIR.mkdir(parents=True, exist_ok=True)
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
