from __future__ import annotations

import time
from datetime import datetime, timezone


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def utc_isoformat() -> str:
    return now_utc().isoformat().replace("+00:00", "Z")


def utc_compact_timestamp() -> str:
    return now_utc().strftime("%Y%m%dT%H%M%SZ")


def monotonic_seconds() -> float:
    return time.monotonic()
