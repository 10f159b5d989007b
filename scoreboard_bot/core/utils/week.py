from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import pytz

from scoreboard_bot.core.domain.models import WeekInfo


def civil_now(tz_name: str, now: Optional[datetime] = None) -> datetime:
    """Return ``now`` (UTC if naive, current time if omitted) converted to the civil timezone."""
    tz = pytz.timezone(tz_name)
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tz)


def week_info_for(moment: datetime) -> WeekInfo:
    """ISO-8601 week of ``moment``; Dec 29-31 may belong to week 1 of next year and Jan 1-3 to week 52/53."""
    year, week, _ = moment.isocalendar()
    return WeekInfo(year=year, week=week)


def current_week_info(tz_name: str, now: Optional[datetime] = None) -> WeekInfo:
    return week_info_for(civil_now(tz_name, now))
