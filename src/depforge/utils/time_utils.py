"""Time utility helpers for UTC-safe timestamps."""

from __future__ import annotations

from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return current timezone-aware UTC timestamp."""

    return datetime.now(timezone.utc)


def report_timestamp(moment: datetime | None = None) -> str:
    """Return a compact `YYYYmmdd-HHMMSS` stamp used in report file names."""

    return (moment or now_utc()).strftime("%Y%m%d-%H%M%S")
