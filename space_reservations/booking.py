from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

from .errors import DurationError, FormatError, OrderError, WindowError

WORK_DAY_START_MINUTES = 6 * 60
WORK_DAY_END_MINUTES = 22 * 60
MIN_DURATION_MINUTES = 30
CLOCK_PATTERN = re.compile(r"\d{2}:\d{2}")


@dataclass(frozen=True)
class TimeRange:
    """A same-day interval stored as minutes from midnight.

    Intervals are half-open ranges: [start, end)
    so touching boundaries (e.g. 09:00-10:00 and 10:00-11:00) do not overlap.
    """

    start: int
    end: int

    @staticmethod
    def parse(text: str | None) -> "TimeRange":
        """Parse and validate an ``HH:mm-HH:mm`` string.

        Checks run in order (format, order, duration, work-day window) and the
        first failing one raises.
        """
        if text is None:
            raise FormatError("Time range is required in HH:mm-HH:mm format.")

        parts = str(text).split("-")
        if len(parts) != 2:
            raise FormatError("Time range must have the format HH:mm-HH:mm.")

        start = _parse_clock(parts[0])
        end = _parse_clock(parts[1])

        if start >= end:
            raise OrderError("Start time must be earlier than end time.")
        if end - start < MIN_DURATION_MINUTES:
            raise DurationError(f"A reservation must last at least {MIN_DURATION_MINUTES} minutes.")
        if start < WORK_DAY_START_MINUTES or end > WORK_DAY_END_MINUTES:
            raise WindowError(
                f"Reservations must be within working hours "
                f"({_format_clock(WORK_DAY_START_MINUTES)}-{_format_clock(WORK_DAY_END_MINUTES)})."
            )

        return TimeRange(start, end)

    def overlaps(self, other: "TimeRange") -> bool:
        return has_time_overlap(self.start, self.end, other.start, other.end)

    @property
    def duration_minutes(self) -> int:
        return self.end - self.start

    def __str__(self) -> str:
        return f"{_format_clock(self.start)}-{_format_clock(self.end)}"


def has_time_overlap(new_start: int, new_end: int, exist_start: int, exist_end: int) -> bool:
    """Return True when two minute-of-day intervals overlap by even one minute."""
    return not (new_end <= exist_start or new_start >= exist_end)


def _parse_clock(value: str) -> int:
    candidate = value.strip()
    if not CLOCK_PATTERN.fullmatch(candidate):
        raise FormatError(f"'{candidate}' is not a valid HH:mm time.")
    try:
        parsed = datetime.strptime(candidate, "%H:%M")
    except ValueError as error:
        raise FormatError(f"'{candidate}' is not a valid HH:mm time.") from error
    return parsed.hour * 60 + parsed.minute


def _format_clock(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"
