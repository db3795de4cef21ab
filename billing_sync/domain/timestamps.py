"""
Billing period normalization.

Provider period boundaries arrive as seconds, sometimes as strings, sometimes
missing, and occasionally as a zero-length range. Everything persisted goes
through normalize_period() first.
"""

import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Optional

from billing_sync.infrastructure.exceptions import MalformedProviderData


logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60
MONTHLY_PERIOD_SECONDS = 30 * DAY_SECONDS   # 2_592_000
ANNUAL_PERIOD_SECONDS = 365 * DAY_SECONDS   # 31_536_000

# Anything above this is taken to be milliseconds.
_MAX_SECONDS = 9_999_999_999


def now_ts() -> int:
    """Current Unix time in whole seconds."""
    return int(time.time())


def coerce_timestamp(raw: Any) -> Optional[int]:
    """
    Best-effort conversion of a provider timestamp to Unix seconds.

    Returns None for missing or unparseable input.
    """
    if raw is None or isinstance(raw, bool):
        return None

    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        if "T" in text:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return int(parsed.timestamp())
        try:
            raw = float(text)
        except ValueError:
            return None

    if isinstance(raw, (int, float)):
        if isinstance(raw, float) and not math.isfinite(raw):
            return None
        value = int(raw)
        if value > _MAX_SECONDS:
            value //= 1000
        return value

    return None


def normalize_period(
    raw_start: Any,
    raw_end: Any,
    is_annual: bool,
    now: Optional[int] = None,
) -> tuple[int, int]:
    """
    Normalize a billing period into (start, end) Unix seconds with end > start.

    Missing values fall back to the current time. A range where end <= start
    is repaired by extending end by one billing interval (30 or 365 days).

    Raises:
        MalformedProviderData: if end is still not after start.
    """
    current = now if now is not None else now_ts()

    start = coerce_timestamp(raw_start)
    end = coerce_timestamp(raw_end)

    if start is None:
        logger.warning(f"Missing or invalid period start {raw_start!r}, using current time")
        start = current
    if end is None:
        logger.warning(f"Missing or invalid period end {raw_end!r}, using current time")
        end = current

    if end <= start:
        interval = ANNUAL_PERIOD_SECONDS if is_annual else MONTHLY_PERIOD_SECONDS
        logger.warning(
            f"Invalid billing period start={start} end={end}; "
            f"extending end by {interval // DAY_SECONDS} days"
        )
        end = start + interval

    if not isinstance(start, int) or not isinstance(end, int) or end <= start:
        raise MalformedProviderData(
            "Could not normalize billing period",
            field="current_period",
            value=(raw_start, raw_end),
        )

    return start, end


def within_tolerance(a: Optional[int], b: Optional[int], tolerance: int) -> bool:
    """True when both timestamps are set and differ by at most `tolerance` seconds."""
    if a is None or b is None:
        return a is None and b is None
    return abs(a - b) <= tolerance
