from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns are timezone=False)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_int(s: Any) -> int | None:
    """Parse an integer from form/JSON input; blank means None."""
    if s is None:
        return None
    if isinstance(s, bool):
        raise ValueError("Expected an integer, got a boolean.")
    if isinstance(s, int):
        return s
    s = str(s).strip()
    if not s:
        return None
    return int(s)


def parse_timestamp(s: str | None) -> datetime | None:
    """
    Parse an ISO-8601 timestamp. Aware values are converted to naive UTC so
    they compare with stored timestamps.
    """
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    value = datetime.fromisoformat(s)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def canonical_json(payload: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators, str() fallback."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def parse_metadata(raw: Any) -> tuple[dict | None, str | None]:
    """Accept a JSON object (or its string form) as object metadata."""
    if raw is None:
        return None, None
    if isinstance(raw, str):
        if not raw.strip():
            return None, None
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            return None, f"Metadata JSON is invalid: {e}"
    if not isinstance(raw, dict):
        return None, "Metadata must be a JSON object."
    return raw, None
