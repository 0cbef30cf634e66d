'''
Pure helpers for "HH:MM" lesson times.

All interval arithmetic is done in minutes since midnight. Intervals are
half-open, so a lesson ending at 10:00 does not touch one starting at 10:00.
'''
import re

MINUTES_PER_DAY = 24 * 60

_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def time_to_minutes(time_string: str) -> int:
    """Converts "HH:MM" to minutes since midnight. Raises ValueError on malformed input."""
    if not isinstance(time_string, str):
        raise ValueError(f"Time must be a 'HH:MM' string, got {time_string!r}")
    match = _TIME_PATTERN.match(time_string.strip())
    if not match:
        raise ValueError(f"Invalid time '{time_string}', expected 'HH:MM'")
    hours, minutes = int(match.group(1)), int(match.group(2))
    return hours * 60 + minutes


def minutes_to_time(total_minutes: int) -> str:
    """Converts minutes since midnight back to "HH:MM", wrapping within a day."""
    total_minutes %= MINUTES_PER_DAY
    return f"{total_minutes // 60:02d}:{total_minutes % 60:02d}"


def calculate_end_time(start_time: str, duration_minutes: int) -> str:
    """
    Computes the end time of a lesson.
    Wraps within a day; cross-midnight lessons are out-of-range input and are not validated here.
    """
    return minutes_to_time(time_to_minutes(start_time) + duration_minutes)


def slot_interval(start_time: str, duration_minutes: int) -> tuple[int, int]:
    """Returns the unwrapped (start, end) interval of a lesson in minutes."""
    start = time_to_minutes(start_time)
    return start, start + duration_minutes


def intervals_overlap(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    """Half-open overlap test. Touching boundaries do not overlap."""
    return a_start < b_end and b_start < a_end


def lessons_overlap(
    first_start: str, first_duration: int,
    second_start: str, second_duration: int
) -> bool:
    """Convenience wrapper: do two same-day lessons overlap?"""
    return intervals_overlap(
        *slot_interval(first_start, first_duration),
        *slot_interval(second_start, second_duration)
    )


def is_valid_time(time_string: str) -> bool:
    try:
        time_to_minutes(time_string)
        return True
    except ValueError:
        return False
