"""
Availability computation for CareerVine.

Pure functions over (start, end) interval lists: merging busy time,
padding it with buffers, subtracting it from working hours, and cutting the
remaining free time into bookable slots.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

Interval = tuple[datetime, datetime]

PROFILE_TYPES = ("standard", "priority")
DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def parse_hhmm(value: str) -> time:
    """Parse a "HH:MM" string. Raises ValueError if malformed."""
    try:
        hours, minutes = value.strip().split(":")
        return time(int(hours), int(minutes))
    except (AttributeError, TypeError, ValueError):
        raise ValueError(f"Invalid time '{value}', expected HH:MM")


@dataclass
class WorkingDay:
    """Working hours and buffers for one weekday (0=Mon .. 6=Sun)."""
    day: int
    enabled: bool = True
    start_time: str = "09:00"
    end_time: str = "18:00"
    buffer_before: int = 10
    buffer_after: int = 10

    def __post_init__(self):
        if not 0 <= self.day <= 6:
            raise ValueError(f"Invalid weekday {self.day}, expected 0 (Mon) to 6 (Sun)")
        if parse_hhmm(self.end_time) <= parse_hhmm(self.start_time):
            raise ValueError(f"Window end {self.end_time} must be after start {self.start_time}")
        if self.buffer_before < 0 or self.buffer_after < 0:
            raise ValueError("Buffers cannot be negative")

    def to_dict(self) -> dict:
        return {
            "day": self.day,
            "enabled": self.enabled,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "buffer_before": self.buffer_before,
            "buffer_after": self.buffer_after,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkingDay":
        """Create from a dict, accepting snake_case or camelCase keys."""
        def pick(snake, camel, default):
            value = data.get(snake, data.get(camel))
            return default if value is None else value

        return cls(
            day=int(data["day"]),
            enabled=bool(data.get("enabled", True)),
            start_time=pick("start_time", "startTime", "09:00"),
            end_time=pick("end_time", "endTime", "18:00"),
            buffer_before=int(pick("buffer_before", "bufferBefore", 10)),
            buffer_after=int(pick("buffer_after", "bufferAfter", 10)),
        )


@dataclass
class AvailabilityProfile:
    """A saved set of working days (the "standard" or "priority" profile)."""
    working_days: list[WorkingDay] = field(default_factory=list)

    @classmethod
    def uniform(
        cls,
        days_of_week: Iterable[int],
        window_start: str,
        window_end: str,
        buffer_before: int = 0,
        buffer_after: int = 0,
    ) -> "AvailabilityProfile":
        """
        Build a profile with the same window on every selected day.

        Args:
            days_of_week: Weekdays as 1=Mon .. 7=Sun
        """
        days = sorted(set(days_of_week))
        for d in days:
            if not 1 <= d <= 7:
                raise ValueError(f"Invalid day of week {d}, expected 1 (Mon) to 7 (Sun)")
        return cls(working_days=[
            WorkingDay(
                day=d - 1,
                start_time=window_start,
                end_time=window_end,
                buffer_before=buffer_before,
                buffer_after=buffer_after,
            )
            for d in days
        ])

    @classmethod
    def from_dict(cls, data: dict) -> "AvailabilityProfile":
        """
        Load a stored profile.

        Accepts the per-day format ({"working_days": [...]}) and the legacy
        flat format ({"days": [1..7], "window_start", "window_end", ...}).
        """
        working_days = data.get("working_days", data.get("workingDays"))
        if working_days is not None:
            return cls(working_days=[WorkingDay.from_dict(d) for d in working_days])

        if "days" in data:
            return cls.uniform(
                data["days"],
                data.get("window_start", data.get("windowStart", "09:00")),
                data.get("window_end", data.get("windowEnd", "18:00")),
                int(data.get("buffer_before", data.get("bufferBefore", 10))),
                int(data.get("buffer_after", data.get("bufferAfter", 10))),
            )

        raise ValueError("Profile must contain 'working_days' or 'days'")

    def to_dict(self) -> dict:
        return {"working_days": [d.to_dict() for d in self.working_days]}

    def rules_by_weekday(self) -> dict[int, WorkingDay]:
        """Enabled working days keyed by weekday (0=Mon)."""
        return {d.day: d for d in self.working_days if d.enabled}


@dataclass
class AvailabilityDay:
    """Free slots on one local calendar day."""
    date: date
    label: str
    slots: list[Interval] = field(default_factory=list)

    @property
    def slot_labels(self) -> list[str]:
        return [format_slot(start, end) for start, end in self.slots]

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "label": self.label,
            "slots": self.slot_labels,
            "ranges": [
                {"start": start.isoformat(), "end": end.isoformat()}
                for start, end in self.slots
            ],
        }


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """
    Merge overlapping or touching intervals.

    Empty intervals (end <= start) are dropped. Result is sorted by start.
    """
    ordered = sorted((s, e) for s, e in intervals if e > s)
    merged: list[Interval] = []
    for start, end in ordered:
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def expand_intervals(
    intervals: Iterable[Interval],
    buffer_before: int = 0,
    buffer_after: int = 0,
) -> list[Interval]:
    """Pad each interval by the given minutes, then merge."""
    before = timedelta(minutes=buffer_before)
    after = timedelta(minutes=buffer_after)
    return merge_intervals((s - before, e + after) for s, e in intervals)


def subtract_intervals(window: Interval, busy: Iterable[Interval]) -> list[Interval]:
    """Return the parts of `window` not covered by any busy interval."""
    window_start, window_end = window
    free: list[Interval] = []
    cursor = window_start
    for start, end in merge_intervals(busy):
        if end <= cursor:
            continue
        if start >= window_end:
            break
        if start > cursor:
            free.append((cursor, start))
        cursor = max(cursor, end)
    if cursor < window_end:
        free.append((cursor, window_end))
    return free


def _align_up(dt: datetime, minutes: int) -> datetime:
    """Round a local datetime up to the next multiple of `minutes` past midnight."""
    aligned = dt.replace(second=0, microsecond=0)
    if aligned < dt:
        aligned += timedelta(minutes=1)
    remainder = (aligned.hour * 60 + aligned.minute) % minutes
    if remainder:
        aligned += timedelta(minutes=minutes - remainder)
    return aligned


def split_into_slots(
    free: Iterable[Interval],
    duration_minutes: int,
    alignment_minutes: int = 15,
) -> list[Interval]:
    """
    Walk free ranges in `duration_minutes` steps.

    Each range's first slot starts at the next `alignment_minutes` boundary;
    a slot is emitted only if it fits entirely inside the range.
    """
    length = timedelta(minutes=duration_minutes)
    slots: list[Interval] = []
    for start, end in free:
        cursor = _align_up(start, alignment_minutes)
        while cursor + length <= end:
            slots.append((cursor, cursor + length))
            cursor += length
    return slots


def format_time_label(dt: datetime) -> str:
    """Format as "9:00 AM"."""
    return dt.strftime("%I:%M %p").lstrip("0")


def format_slot(start: datetime, end: datetime) -> str:
    """Format a slot as "9:00 AM - 9:30 AM"."""
    return f"{format_time_label(start)} - {format_time_label(end)}"


def format_day_label(day: date) -> str:
    """Format a day as "Tue, Oct 20"."""
    return f"{DAY_NAMES[day.weekday()]}, {day:%b} {day.day}"


def compute_availability(
    busy: Iterable[Interval],
    start: datetime,
    end: datetime,
    tz_name: str,
    profile: AvailabilityProfile,
    duration_minutes: int,
    alignment_minutes: int = 15,
    not_before: Optional[datetime] = None,
) -> list[AvailabilityDay]:
    """
    Compute free slots per day.

    For each local day in [start, end) whose weekday is enabled in the
    profile, the working window (clipped to the range and `not_before`) has
    the buffered busy intervals removed and is cut into slots.

    Args:
        busy: Busy intervals (aware datetimes)
        start: Range start (aware)
        end: Range end, exclusive (aware)
        tz_name: IANA timezone the working hours are expressed in
        profile: Working days, windows and buffers
        duration_minutes: Slot length
        alignment_minutes: Slot start rounding
        not_before: Drop time before this instant (usually "now")

    Returns:
        One AvailabilityDay per matching day, in order. Days without free
        time have an empty slot list.
    """
    if end <= start:
        raise ValueError("End must be after start")
    if duration_minutes <= 0:
        raise ValueError("Duration must be positive")
    if alignment_minutes <= 0:
        raise ValueError("Slot alignment must be positive")

    tz = ZoneInfo(tz_name)
    rules = profile.rules_by_weekday()
    busy = merge_intervals(busy)
    range_start = max(start, not_before) if not_before else start

    days: list[AvailabilityDay] = []
    day = start.astimezone(tz).date()
    while datetime.combine(day, time.min, tzinfo=tz) < end:
        rule = rules.get(day.weekday())
        if rule:
            window_start = max(datetime.combine(day, parse_hhmm(rule.start_time), tzinfo=tz), range_start)
            window_end = min(datetime.combine(day, parse_hhmm(rule.end_time), tzinfo=tz), end)

            slots: list[Interval] = []
            if window_end > window_start:
                blocked = expand_intervals(busy, rule.buffer_before, rule.buffer_after)
                free = subtract_intervals((window_start, window_end), blocked)
                slots = split_into_slots(
                    [(s.astimezone(tz), e.astimezone(tz)) for s, e in free],
                    duration_minutes,
                    alignment_minutes,
                )

            days.append(AvailabilityDay(date=day, label=format_day_label(day), slots=slots))
        day += timedelta(days=1)

    return days


def busy_intervals(events) -> list[Interval]:
    """Busy intervals from cached events that block time."""
    return merge_intervals((e.start_at, e.end_at) for e in events if e.blocks_time())


def format_availability_text(days: Iterable[AvailabilityDay]) -> str:
    """Render availability as "<day>: <slot>, <slot>" lines for an email draft."""
    return "\n".join(
        f"{d.label}: {', '.join(d.slot_labels)}" for d in days if d.slots
    )
