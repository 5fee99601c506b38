"""
Runtime configuration for the chat turn pipeline.
"""

import os

from pydantic import BaseModel


def _env_int(name: str, default: int, min_value: int, max_value: int) -> int:
    raw = os.getenv(name)
    try:
        value = int(raw) if raw not in (None, "") else default
    except Exception:
        value = default
    return max(min_value, min(max_value, value))


def _env_float(name: str, default: float, min_value: float, max_value: float) -> float:
    raw = os.getenv(name)
    try:
        value = float(raw) if raw not in (None, "") else default
    except Exception:
        value = default
    return max(min_value, min(max_value, value))


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


PAID_PLANS = ("pro", "paid", "premium", "plus")


def is_paid_plan(plan: str) -> bool:
    return (plan or "free").strip().lower() in PAID_PLANS


class TurnSettings(BaseModel):
    """Tunable knobs for one turn: prompt windows, retry bounds, format band, worker budget."""

    # Prompt composition
    history_limit: int = 10
    history_char_budget: int = 3500
    history_item_max_chars: int = 800
    user_text_max_chars: int = 2000
    persona_field_max_chars: int = 160
    long_message_threshold: int = 140

    # Guards
    pacing_threshold: int = 8

    # Retry / validation
    max_attempts: int = 3
    recent_assistant_window: int = 5
    min_topic_sentences: int = 2
    min_depth_sentences: int = 3
    retry_backoff_base_sec: float = 0.5

    # Free-tier format band
    free_min_sentences: int = 3
    free_max_sentences: int = 4
    free_min_words: int = 40
    free_max_words: int = 90
    max_format_reprompts: int = 2

    # Idempotency
    idempotency_ttl_sec: int = 15
    replay_window_sec: int = 120

    # Persistence
    persist_max_chars: int = 4000

    # Worker budget
    per_user_concurrency: int = 5
    global_concurrency: int = 20
    queue_timeout_sec: float = 30.0
    worker_idle_ttl_sec: float = 600.0

    @classmethod
    def from_env(cls) -> "TurnSettings":
        return cls(
            history_limit=_env_int("TURN_HISTORY_LIMIT", 10, 0, 100),
            history_char_budget=_env_int("TURN_HISTORY_CHAR_BUDGET", 3500, 0, 50000),
            user_text_max_chars=_env_int("TURN_USER_TEXT_MAX_CHARS", 2000, 100, 20000),
            pacing_threshold=_env_int("TURN_PACING_THRESHOLD", 8, 0, 200),
            max_attempts=_env_int("TURN_MAX_ATTEMPTS", 3, 1, 8),
            retry_backoff_base_sec=_env_float("TURN_RETRY_BACKOFF_BASE_SEC", 0.5, 0.0, 5.0),
            free_min_words=_env_int("TURN_FREE_MIN_WORDS", 40, 1, 500),
            free_max_words=_env_int("TURN_FREE_MAX_WORDS", 90, 1, 1000),
            max_format_reprompts=_env_int("TURN_MAX_FORMAT_REPROMPTS", 2, 0, 4),
            idempotency_ttl_sec=_env_int("TURN_IDEMPOTENCY_TTL_SEC", 15, 1, 600),
            replay_window_sec=_env_int("TURN_REPLAY_WINDOW_SEC", 120, 0, 86400),
            persist_max_chars=_env_int("TURN_PERSIST_MAX_CHARS", 4000, 200, 100000),
            per_user_concurrency=_env_int("TURN_PER_USER_CONCURRENCY", 5, 1, 50),
            global_concurrency=_env_int("TURN_GLOBAL_CONCURRENCY", 20, 1, 1000),
            queue_timeout_sec=_env_float("TURN_QUEUE_TIMEOUT_SEC", 30.0, 0.1, 600.0),
            worker_idle_ttl_sec=_env_float("TURN_WORKER_IDLE_TTL_SEC", 600.0, 1.0, 86400.0),
        )
