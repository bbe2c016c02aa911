from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from errors import InvalidTimezone, InvalidWindow


class WindowPreset(str, Enum):
    today = "today"
    this_week = "this_week"
    this_month = "this_month"
    last_7_days = "last_7_days"
    last_30_days = "last_30_days"
    custom = "custom"
    week = "week"
    fortnight = "fortnight"
    month = "month"
    quarter = "quarter"
    half_year = "half_year"
    year = "year"


class BucketPreset(str, Enum):
    day = "day"
    week = "week"
    fortnight = "fortnight"
    month = "month"
    quarter = "quarter"
    half_year = "half_year"
    year = "year"


BUCKET_LABELS = {
    BucketPreset.day: "Day",
    BucketPreset.week: "Week",
    BucketPreset.fortnight: "Fortnight",
    BucketPreset.month: "Month",
    BucketPreset.quarter: "Quarter",
    BucketPreset.half_year: "Half-year",
    BucketPreset.year: "Year",
}

_BUCKET_RANK = {
    BucketPreset.day: 0,
    BucketPreset.week: 1,
    BucketPreset.fortnight: 2,
    BucketPreset.month: 3,
    BucketPreset.quarter: 4,
    BucketPreset.half_year: 5,
    BucketPreset.year: 6,
}

# Window presets that snap to calendar boundaries around an anchor date.
_CALENDAR_PRESETS = {
    WindowPreset.this_week: BucketPreset.week,
    WindowPreset.week: BucketPreset.week,
    WindowPreset.fortnight: BucketPreset.fortnight,
    WindowPreset.this_month: BucketPreset.month,
    WindowPreset.month: BucketPreset.month,
    WindowPreset.quarter: BucketPreset.quarter,
    WindowPreset.half_year: BucketPreset.half_year,
    WindowPreset.year: BucketPreset.year,
}

_ROLLING_DAYS = {
    WindowPreset.today: 1,
    WindowPreset.last_7_days: 7,
    WindowPreset.last_30_days: 30,
}

_WINDOW_FOR_BUCKET = {
    BucketPreset.day: WindowPreset.today,
    BucketPreset.week: WindowPreset.week,
    BucketPreset.fortnight: WindowPreset.fortnight,
    BucketPreset.month: WindowPreset.month,
    BucketPreset.quarter: WindowPreset.quarter,
    BucketPreset.half_year: WindowPreset.half_year,
    BucketPreset.year: WindowPreset.year,
}


@dataclass(frozen=True)
class WindowRange:
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise InvalidWindow(
                f"Window start {self.start.isoformat()} is after end {self.end.isoformat()}"
            )

    def __contains__(self, day: date) -> bool:
        return self.start <= day <= self.end

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


@dataclass(frozen=True)
class WindowNavigation:
    window: WindowRange
    prev: Optional[WindowRange]
    next: Optional[WindowRange]


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise InvalidTimezone(name) from exc


def _as_tzinfo(tz: Union[str, tzinfo]) -> tzinfo:
    if isinstance(tz, str):
        return resolve_timezone(tz)
    return tz


def local_today(tz: Union[str, tzinfo], *, now: Optional[datetime] = None) -> date:
    """Return the calendar date in ``tz``; naive ``now`` values are read as UTC."""
    zone = _as_tzinfo(tz)
    if now is None:
        return datetime.now(zone).date()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(zone).date()


def _month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year, 12, 31)
    return date(year, month + 1, 1) - date.resolution


def _month_span(year: int, first_month: int, months: int) -> WindowRange:
    last_month = first_month + months - 1
    return WindowRange(date(year, first_month, 1), _month_end(year, last_month))


def bucket_range(preset: BucketPreset, anchor: date) -> WindowRange:
    """Nominal calendar period of kind ``preset`` containing ``anchor``."""
    if preset == BucketPreset.day:
        return WindowRange(anchor, anchor)
    if preset == BucketPreset.week:
        start = anchor - timedelta(days=anchor.weekday())
        return WindowRange(start, start + timedelta(days=6))
    if preset == BucketPreset.fortnight:
        if anchor.day <= 14:
            return WindowRange(anchor.replace(day=1), anchor.replace(day=14))
        return WindowRange(anchor.replace(day=15), _month_end(anchor.year, anchor.month))
    if preset == BucketPreset.month:
        return _month_span(anchor.year, anchor.month, 1)
    if preset == BucketPreset.quarter:
        return _month_span(anchor.year, ((anchor.month - 1) // 3) * 3 + 1, 3)
    if preset == BucketPreset.half_year:
        return _month_span(anchor.year, 1 if anchor.month <= 6 else 7, 6)
    return _month_span(anchor.year, 1, 12)


def resolve_window(
    preset: Union[WindowPreset, str],
    anchor: Optional[date] = None,
    *,
    tz: Union[str, tzinfo] = "UTC",
    start: Optional[date] = None,
    end: Optional[date] = None,
    now: Optional[datetime] = None,
) -> WindowRange:
    preset = WindowPreset(preset)
    if preset == WindowPreset.custom:
        if start is None or end is None:
            raise ValueError("Custom window requires start and end dates")
        if start > end:
            raise ValueError("Start date must be before end date")
        return WindowRange(start, end)

    anchor = anchor or local_today(tz, now=now)
    if preset in _CALENDAR_PRESETS:
        return bucket_range(_CALENDAR_PRESETS[preset], anchor)
    days = _ROLLING_DAYS[preset]
    return WindowRange(anchor - timedelta(days=days - 1), anchor)


def subdivide(
    window: WindowRange, bucket_preset: Union[BucketPreset, str]
) -> list[WindowRange]:
    """Split ``window`` into calendar-aligned buckets, clipped at both edges.

    The result is ascending and tiles the window exactly.
    """
    bucket_preset = BucketPreset(bucket_preset)
    buckets: list[WindowRange] = []
    cursor = window.start
    while cursor <= window.end:
        nominal = bucket_range(bucket_preset, cursor)
        bucket = WindowRange(cursor, min(nominal.end, window.end))
        buckets.append(bucket)
        if bucket.end == window.end:
            break
        cursor = bucket.end + date.resolution
    return buckets


def _window_rank(preset: WindowPreset) -> int:
    if preset == WindowPreset.custom:
        return _BUCKET_RANK[BucketPreset.year]
    if preset in _CALENDAR_PRESETS:
        return _BUCKET_RANK[_CALENDAR_PRESETS[preset]]
    if preset == WindowPreset.today:
        return _BUCKET_RANK[BucketPreset.day]
    if preset == WindowPreset.last_7_days:
        return _BUCKET_RANK[BucketPreset.week]
    return _BUCKET_RANK[BucketPreset.month]


def can_contain(window_preset: WindowPreset, bucket_preset: BucketPreset) -> bool:
    return _window_rank(window_preset) >= _BUCKET_RANK[bucket_preset]


def smallest_window_for(bucket_preset: BucketPreset) -> WindowPreset:
    return _WINDOW_FOR_BUCKET[bucket_preset]


def is_calendar_preset(preset: WindowPreset) -> bool:
    return preset in _CALENDAR_PRESETS


def shift_window(preset: WindowPreset, window: WindowRange, direction: int) -> WindowRange:
    if preset in _CALENDAR_PRESETS:
        if direction < 0:
            anchor = window.start - date.resolution
        else:
            anchor = window.end + date.resolution
        return bucket_range(_CALENDAR_PRESETS[preset], anchor)
    step = timedelta(days=window.days * direction)
    return WindowRange(window.start + step, window.end + step)


def window_navigation(
    preset: WindowPreset, window: WindowRange, bounds: Optional[WindowRange]
) -> WindowNavigation:
    """Previous/next windows, offered only while they overlap ``bounds``."""
    if bounds is None:
        return WindowNavigation(window, None, None)
    prev_range = _neighbour(preset, window, -1)
    next_range = _neighbour(preset, window, 1)
    return WindowNavigation(
        window,
        prev_range if prev_range and prev_range.end >= bounds.start else None,
        next_range if next_range and next_range.start <= bounds.end else None,
    )


def _neighbour(
    preset: WindowPreset, window: WindowRange, direction: int
) -> Optional[WindowRange]:
    # No neighbour past date.min / date.max.
    try:
        return shift_window(preset, window, direction)
    except OverflowError:
        return None


def window_query(preset: WindowPreset, window: WindowRange) -> str:
    if preset in _CALENDAR_PRESETS:
        calendar = _WINDOW_FOR_BUCKET[_CALENDAR_PRESETS[preset]]
        return f"window={calendar.value}&anchor={window.end.isoformat()}"
    return (
        f"window={WindowPreset.custom.value}"
        f"&start={window.start.isoformat()}&end={window.end.isoformat()}"
    )


def _date_label(day: date) -> str:
    return f"{day.day} {day.strftime('%b')} {day.year}"


def window_label(window: WindowRange) -> str:
    return f"{_date_label(window.start)} - {_date_label(window.end)}"
