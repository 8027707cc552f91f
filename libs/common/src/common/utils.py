from __future__ import annotations

import re
from datetime import UTC, datetime

NON_ALNUM_PATTERN = re.compile(r"[^a-z0-9]")


def now_utc() -> datetime:
    return datetime.now(UTC)


def now_utc_iso() -> str:
    return now_utc().isoformat()


def parse_iso_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def strip_to_alnum(text: str) -> str:
    return NON_ALNUM_PATTERN.sub("", text.lower())
