"""Centralized configuration for Autofeed.

Re-exports everything from autofeed.infrastructure.settings, then adds typed
constants for the database, completion service and queue. Feed tuning knobs
(thresholds, windows, cooldowns) live on the immutable FeedConfig, which is
built once at startup and passed into every pipeline component.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields

from autofeed.infrastructure.settings import *  # noqa: F401, F403

# --- Database ---
DB_POOL_SIZE: int = int(os.getenv("AUTOFEED_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(os.getenv("AUTOFEED_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(os.getenv("AUTOFEED_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(os.getenv("AUTOFEED_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(os.getenv("AUTOFEED_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("AUTOFEED_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("AUTOFEED_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("AUTOFEED_DB_RETRY_JITTER", "0.1"))

# --- Completion service ---
LLM_TIMEOUT_SECONDS: int = int(os.getenv("AUTOFEED_LLM_TIMEOUT", "30"))
LLM_LONG_TIMEOUT_SECONDS: int = int(os.getenv("AUTOFEED_LLM_LONG_TIMEOUT", "120"))
LLM_LONG_PROMPT_CHARS: int = 50_000
LLM_MAX_ATTEMPTS: int = 2  # one retry on timeout

# --- Shared store ---
REDIS_MAX_ATTEMPTS: int = int(os.getenv("AUTOFEED_REDIS_MAX_ATTEMPTS", "2"))
REDIS_RETRY_BASE_DELAY: float = 0.05
ACTIVITY_KEY_NAMESPACE: str = "autofeed:activity"

# --- Task queue ---
QUEUE_NAME: str = os.getenv("AUTOFEED_QUEUE_NAME", "autofeed:jobs")
QUEUE_POLL_TIMEOUT: float = float(os.getenv("AUTOFEED_QUEUE_POLL_TIMEOUT", "5.0"))
# Must outlive the longest job; a consumer silent for longer is presumed dead
QUEUE_CONSUMER_TTL_SECONDS: int = int(os.getenv("AUTOFEED_QUEUE_CONSUMER_TTL", "900"))
SCHEDULE_LOCK_KEY: str = "autofeed:scheduled_scan:lock"

# --- Activity state bounds (seconds) ---
STATE_TTL_MIN_SECONDS: int = 300
STATE_TTL_MAX_SECONDS: int = 86_400


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class FeedConfig:
    """Immutable feed tuning knobs.

    Each field can be overridden with an ``AUTOFEED_<FIELD_NAME>`` environment
    variable. Tests build variants with ``dataclasses.replace``.
    """

    automated_scans_enabled: bool = True

    # Activity tracker
    activity_message_threshold: int = 15
    activity_quality_message_threshold: int = 8
    activity_quality_participant_threshold: int = 3
    activity_cooldown_minutes: int = 30
    activity_state_ttl_minutes: int = 240

    # Global scan
    lookback_hours: int = 2
    global_scan_message_limit: int = 500
    max_conversations_per_scan: int = 999

    # Room-scoped scan
    room_scan_lookback_hours: int = 12
    room_scan_message_limit: int = 120
    room_scan_thread_limit: int = 40
    room_scan_context_backfill: int = 20
    backlog_days: int = 7

    summary_max_chars: int = 140

    # Deduplication
    dedup_candidate_limit: int = 20
    dedup_lookback_days: int = 7
    dedup_scope_to_source_room: bool = True

    # Manual promotion
    promotion_context_hours: int = 12
    promotion_max_context_messages: int = 100
    promotion_max_expansions: int = 3

    # Scheduled fallback scan
    fallback_scan_interval_minutes: int = 120

    # Completion model; empty means GEMINI_MODEL
    scan_model: str = ""

    @property
    def cooldown_seconds(self) -> int:
        return max(self.activity_cooldown_minutes, 0) * 60

    @property
    def state_ttl_seconds(self) -> int:
        ttl = self.activity_state_ttl_minutes * 60
        return min(max(ttl, STATE_TTL_MIN_SECONDS), STATE_TTL_MAX_SECONDS)

    @classmethod
    def from_env(cls) -> FeedConfig:
        """Build a config from ``AUTOFEED_*`` environment variables."""
        overrides: dict[str, object] = {}
        for f in fields(cls):
            raw = os.getenv(f"AUTOFEED_{f.name.upper()}")
            if raw is None:
                continue
            if f.type == "bool":
                overrides[f.name] = _env_bool(f"AUTOFEED_{f.name.upper()}", f.default)
            elif f.type == "int":
                overrides[f.name] = int(raw)
            else:
                overrides[f.name] = raw
        return cls(**overrides)
