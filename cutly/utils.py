from __future__ import annotations

import uuid
from datetime import datetime, date, timezone
from typing import Any, Optional


def iso_now() -> str:
    # Use UTC ISO timestamps for consistency.
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def parse_iso_date(value: Any) -> Optional[date]:
    """Accepts a date, a datetime or an ISO string ("2026-03-01" or a full timestamp)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    if not s:
        return None
    return date.fromisoformat(s[:10])


def blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value
