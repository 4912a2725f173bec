"""
Time helpers. Every timestamp inside the agent is timezone-aware UTC.
"""

from datetime import datetime
from typing import Optional

import pytz


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def to_utc(ts: Optional[datetime]) -> Optional[datetime]:
    """Convert to UTC. Naive datetimes are taken as UTC."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        return pytz.UTC.localize(ts)
    return ts.astimezone(pytz.UTC)
