from __future__ import annotations

from datetime import datetime, time

MINUTES_PER_DAY = 24 * 60


def parse_hhmm(value: str) -> int:
    """Return minutes after midnight for a zero-padded 24-hour "HH:MM" string."""
    hour_str, sep, minute_str = value.strip().partition(":")
    if not sep or len(hour_str) != 2 or len(minute_str) != 2:
        raise ValueError(f"Invalid time format: {value!r}. Use HH:MM.")
    hour = int(hour_str)
    minute = int(minute_str)
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        raise ValueError(f"Invalid time value: {value!r}.")
    return hour * 60 + minute


def format_hhmm(value: time | datetime) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def is_valid_hhmm(value: str | None) -> bool:
    if value is None:
        return False
    try:
        parse_hhmm(value)
    except ValueError:
        return False
    return True


def is_within_window(current_time: str, window_start: str, window_end: str) -> bool:
    """Inclusive check of a wall-clock time against an allowed window.

    A window whose end is earlier than its start spans midnight, e.g.
    22:00-06:00 accepts 23:30 and 05:00 but rejects 12:00.
    """
    current = parse_hhmm(current_time)
    start = parse_hhmm(window_start)
    end = parse_hhmm(window_end)

    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def window_contains_window(
    outer_start: str,
    outer_end: str,
    inner_start: str,
    inner_end: str,
) -> bool:
    """True when every minute of the inner window falls inside the outer one."""
    outer_s = parse_hhmm(outer_start)
    outer_e = parse_hhmm(outer_end)
    inner_s = parse_hhmm(inner_start)
    inner_e = parse_hhmm(inner_end)

    def _unwrap(start: int, end: int) -> tuple[int, int]:
        return start, end if end >= start else end + MINUTES_PER_DAY

    o_s, o_e = _unwrap(outer_s, outer_e)
    i_s, i_e = _unwrap(inner_s, inner_e)
    if o_s <= i_s and i_e <= o_e:
        return True
    # An inner window starting after midnight may sit in the tail of a wrapping outer window.
    return o_s <= i_s + MINUTES_PER_DAY and i_e + MINUTES_PER_DAY <= o_e
