"""Business-local time. Storage is always UTC; only display and the late-order check are local."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

logger = structlog.get_logger()

DEFAULT_TIMEZONE = "America/Mexico_City"


def business_zone(name: Optional[str] = None) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_business_timezone", timezone=name)
        return ZoneInfo(DEFAULT_TIMEZONE)


def to_local(value: datetime, tz_name: Optional[str] = None) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(business_zone(tz_name))
