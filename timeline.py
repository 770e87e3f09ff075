"""
Date ranges and axis markers for the dashboard timeline.

All functions here are pure: they take "now", the selected range option and
already fetched entries, and return plain values. Calendar arithmetic is done
in the timezone of the datetimes handed in.
"""
from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Iterator, List, Mapping, Optional

from pydantic import BaseModel

from errors import ValidationError

MAX_MARKERS = 100
SYNTHETIC_TOLERANCE = timedelta(seconds=60)
WEEK_HOURS = 168
DAY_HOURS = 24


class TimeRangeOption(str, Enum):
    TODAY = "Today"
    YESTERDAY = "Yesterday"
    WEEK_TO_DATE = "Week to Date"
    MONTH_TO_DATE = "Month to Date"
    LAST_7_DAYS = "Last 7 Days"
    LAST_30_DAYS = "Last 30 Days"
    YEAR_TO_DATE = "Year to Date"

    @property
    def is_single_day(self) -> bool:
        return self in (TimeRangeOption.TODAY, TimeRangeOption.YESTERDAY)

    @classmethod
    def parse(cls, value: Any) -> "TimeRangeOption":
        """Accept the display name in any case, with '_' or ' ' separators."""
        if isinstance(value, cls):
            return value
        wanted = str(value).strip().lower().replace("_", " ")
        for option in cls:
            if option.value.lower() == wanted:
                return option
        raise ValidationError(f"Unknown time range: {value!r}")


class DateRange(BaseModel):
    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


class TimelineMarker(BaseModel):
    label: str
    position_percent: float
    position: str


class TimelineBar(BaseModel):
    entry_id: str
    project_id: str
    left_percent: float
    width_percent: float
    running: bool


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=23, minute=59, second=59, microsecond=999000)


def _localize(moment: datetime, tz) -> datetime:
    # naive values coming out of the store are UTC
    if tz is None:
        if moment.tzinfo is None:
            return moment
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz)


def _entry_value(entry: Any, field: str) -> Optional[datetime]:
    if isinstance(entry, datetime):
        return entry if field == "start_time" else None
    if isinstance(entry, Mapping):
        return entry.get(field)
    return getattr(entry, field, None)


def resolve_range(
    option: Any,
    now: datetime,
    entries: Iterable[Any] = (),
    workday_start_hour: int = 8,
) -> DateRange:
    """
    Turn a named range into concrete instants.

    Weeks start on Sunday and "Last N Days" counts today as one of the N days.
    For Today and Yesterday the start is pulled forward to the earlier of the
    first entry of that day and the workday start, so a short session does not
    sit at the end of an empty timeline.
    """
    option = TimeRangeOption.parse(option)
    today = start_of_day(now)

    if option is TimeRangeOption.TODAY:
        return _single_day_range(today, entries, workday_start_hour)
    if option is TimeRangeOption.YESTERDAY:
        return _single_day_range(today - timedelta(days=1), entries, workday_start_hour)

    if option is TimeRangeOption.WEEK_TO_DATE:
        # weekday() is 0 for Monday; Sunday starts the week
        start = today - timedelta(days=(now.weekday() + 1) % 7)
    elif option is TimeRangeOption.MONTH_TO_DATE:
        start = today.replace(day=1)
    elif option is TimeRangeOption.YEAR_TO_DATE:
        start = today.replace(month=1, day=1)
    elif option is TimeRangeOption.LAST_7_DAYS:
        start = today - timedelta(days=6)
    else:
        start = today - timedelta(days=29)
    return DateRange(start=start, end=end_of_day(now))


def query_window(option: Any, now: datetime) -> DateRange:
    """The full calendar window of an option, used to fetch its entries."""
    option = TimeRangeOption.parse(option)
    resolved = resolve_range(option, now)
    if option.is_single_day:
        return DateRange(start=start_of_day(resolved.start), end=resolved.end)
    return resolved


def _single_day_range(day_start: datetime, entries: Iterable[Any], workday_start_hour: int) -> DateRange:
    day_end = end_of_day(day_start)
    workday_start = day_start.replace(hour=workday_start_hour)

    starts = []
    for entry in entries:
        value = _entry_value(entry, "start_time")
        if value is None:
            continue
        value = _localize(value, day_start.tzinfo)
        if day_start <= value <= day_end:
            starts.append(value)

    start = min(min(starts), workday_start) if starts else workday_start
    return DateRange(start=max(start, day_start), end=day_end)


def marker_interval_hours(date_range: DateRange, option: Any) -> int:
    option = TimeRangeOption.parse(option)
    span = date_range.duration
    if not option.is_single_day:
        return WEEK_HOURS if span > timedelta(days=7) else DAY_HOURS
    if span <= timedelta(hours=8):
        return 1
    if span <= timedelta(hours=16):
        return 2
    return 3


def _align(moment: datetime, interval_hours: int) -> datetime:
    midnight = start_of_day(moment)
    if interval_hours == WEEK_HOURS:
        return midnight - timedelta(days=(moment.weekday() + 1) % 7)
    if interval_hours == DAY_HOURS:
        return midnight
    return midnight.replace(hour=moment.hour // interval_hours * interval_hours)


def _candidate_times(date_range: DateRange, interval_hours: int) -> Iterator[datetime]:
    step = timedelta(hours=interval_hours)
    moment = _align(date_range.start, interval_hours)
    for _ in range(MAX_MARKERS):
        if moment > date_range.end:
            return
        yield moment
        moment += step


def format_label(moment: datetime, interval_hours: int) -> str:
    if interval_hours == WEEK_HOURS:
        return f"{moment:%b} {moment.day}"
    if interval_hours == DAY_HOURS:
        return f"{moment:%a} {moment.day}"
    return moment.strftime("%I:%M %p")


def format_position(percent: float) -> str:
    return f"{percent:.4f}".rstrip("0").rstrip(".") + "%"


def position_percent(moment: datetime, date_range: DateRange) -> float:
    total = date_range.duration.total_seconds()
    percent = (moment - date_range.start).total_seconds() / total * 100
    return min(100.0, max(0.0, percent))


def iter_markers(date_range: DateRange, option: Any) -> Iterator[TimelineMarker]:
    """Yield axis markers for the range; call again to start over."""
    if date_range.end <= date_range.start:
        return
    interval = marker_interval_hours(date_range, option)
    candidates = _candidate_times(date_range, interval)

    # candidates at or before the start all collapse onto 0%
    leading: List[datetime] = []
    following: List[datetime] = []
    for moment in candidates:
        if moment > date_range.start:
            following.append(moment)
            break
        leading.append(moment)

    if all(abs(moment - date_range.start) > SYNTHETIC_TOLERANCE for moment in leading):
        leading.insert(0, date_range.start)

    seen = set()
    for moment in itertools.chain(leading, following, candidates):
        percent = position_percent(moment, date_range)
        position = format_position(percent)
        if position in seen:
            continue
        seen.add(position)
        yield TimelineMarker(
            label=format_label(moment, interval),
            position_percent=percent,
            position=position,
        )


def generate_markers(date_range: DateRange, option: Any) -> List[TimelineMarker]:
    return list(iter_markers(date_range, option))


def place_entry(entry: Mapping[str, Any], date_range: DateRange, now: datetime) -> Optional[TimelineBar]:
    """Horizontal extent of an entry on the timeline, or None when it falls outside."""
    if date_range.end <= date_range.start:
        return None
    tz = date_range.start.tzinfo
    start = _localize(entry["start_time"], tz)
    running = entry.get("end_time") is None
    end = _localize(now if running else entry["end_time"], tz)
    if end < date_range.start or start > date_range.end:
        return None

    left = position_percent(start, date_range)
    right = position_percent(end, date_range)
    return TimelineBar(
        entry_id=str(entry["_id"]),
        project_id=entry["project_id"],
        left_percent=left,
        width_percent=max(0.0, right - left),
        running=running,
    )


def format_duration(seconds: Optional[int]) -> str:
    if seconds is None:
        return "—"
    hours, rem = divmod(int(seconds), 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
