from __future__ import annotations

from datetime import UTC, datetime


def now_utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def parse_iso_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        normalized = value.replace("Z", "+00:00")
        return datetime.fromisoformat(normalized)
    except ValueError:
        return None


def split_csv(raw: str | None) -> list[str]:
    """Split a comma-separated string into trimmed, non-empty, unique parts."""
    if not raw:
        return []
    parts = [part.strip() for part in raw.split(",")]
    return list(dict.fromkeys(part for part in parts if part))
