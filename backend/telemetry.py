"""Turn telemetry: JSONL event logging and summary reader."""

import json
import logging
import os
from collections import Counter, deque
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Iterator, Optional

from text_utils import normalize_whitespace

logger = logging.getLogger(__name__)

_BACKEND_DIR = Path(__file__).resolve().parent


def telemetry_path() -> Path:
    raw = os.getenv("TURN_TELEMETRY_LOG", "turn_telemetry.log") or "turn_telemetry.log"
    path = Path(raw)
    return path if path.is_absolute() else _BACKEND_DIR / path


def telemetry_enabled() -> bool:
    return (os.getenv("TURN_TELEMETRY_ENABLED", "1") or "1").strip().lower() in (
        "1", "true", "yes", "on",
    )


def append_turn_telemetry(event: str, payload: Optional[dict] = None) -> None:
    if not telemetry_enabled():
        return
    try:
        data = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": normalize_whitespace(event or "event"),
            "payload": payload or {},
        }
        path = telemetry_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(data, ensure_ascii=False, default=str) + "\n")
    except Exception as exc:
        # Telemetry must never fail a turn.
        logger.debug("telemetry write failed: %s", exc)


def _parse_ts(raw) -> Optional[datetime]:
    try:
        ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class _EventReader:
    """Walks the JSONL file once, keeping events newer than ``cutoff``."""

    def __init__(self, path: Path, cutoff: datetime):
        self.path = path
        self.cutoff = cutoff
        self.parse_errors = 0

    def __iter__(self) -> Iterator[tuple[datetime, str, dict]]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        item = json.loads(line)
                    except ValueError:
                        self.parse_errors += 1
                        continue
                    ts = _parse_ts(item.get("ts"))
                    if ts is None or ts < self.cutoff:
                        continue
                    event = normalize_whitespace(str(item.get("event") or "")) or "event"
                    payload = item.get("payload")
                    yield ts, event, payload if isinstance(payload, dict) else {}
        except OSError as exc:
            logger.warning("telemetry read failed path=%s error=%s", self.path, exc)


def read_turn_telemetry_summary(hours: int = 24, limit: int = 6) -> dict:
    """Event counts and rates over the last ``hours`` (1-168) plus the ``limit`` newest events."""
    window = max(1, min(168, int(hours or 24)))
    keep = max(1, min(25, int(limit or 6)))
    now_utc = datetime.now(timezone.utc)
    path = telemetry_path()

    counts: Counter = Counter()
    reasons: Counter = Counter()
    reprompted = 0
    recent: deque = deque(maxlen=keep)
    reader = _EventReader(path, now_utc - timedelta(hours=window))

    if path.exists():
        for ts, event, payload in reader:
            counts[event] += 1
            if event == "candidate_rejected":
                reasons[normalize_whitespace(str(payload.get("reason") or "")) or "UNKNOWN"] += 1
            elif event == "turn_accepted" and int(payload.get("format_reprompts") or 0) > 0:
                reprompted += 1
            recent.append({"ts": ts.isoformat(), "event": event, "payload": payload})

    accepted = counts["turn_accepted"]
    return {
        "status": "ok",
        "now_utc": now_utc.isoformat(),
        "window_hours": window,
        "telemetry_enabled": telemetry_enabled(),
        "file_exists": path.exists(),
        "file_path": path.name,
        "counts": dict(counts),
        "rejection_reason_counts": dict(reasons),
        "reprompt_rate_percent": round(reprompted * 100.0 / accepted, 2) if accepted else 0.0,
        "emergency_retry_count": counts["emergency_retry"],
        "format_degrade_count": counts["format_degrade"],
        "mirror_failure_count": counts["mirror_failed"],
        "recent": list(recent),
        "parse_errors": reader.parse_errors,
    }
