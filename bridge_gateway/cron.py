from __future__ import annotations

from datetime import datetime, timedelta

_FIELD_BOUNDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 7),
)


def validate_cron(cron_expr: str) -> None:
    fields = str(cron_expr or "").strip().split()
    if len(fields) != 5:
        raise ValueError("cron expression must contain 5 fields")
    for token, (label, min_value, max_value) in zip(fields, _FIELD_BOUNDS):
        for part in token.split(","):
            if not _valid_part(part, min_value, max_value):
                raise ValueError(f"Invalid cron {label} field: {token!r}")


def cron_next_run(cron_expr: str, after: datetime) -> datetime:
    """First whole minute strictly after `after` matching the expression."""
    validate_cron(cron_expr)
    m_field, h_field, dom_field, mon_field, dow_field = cron_expr.split()
    cursor = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    for _ in range(0, 366 * 24 * 60):
        if (
            _cron_match(m_field, cursor.minute, 0)
            and _cron_match(h_field, cursor.hour, 0)
            and _cron_match(dom_field, cursor.day, 1)
            and _cron_match(mon_field, cursor.month, 1)
            and _dow_match(dow_field, cursor)
        ):
            return cursor
        cursor += timedelta(minutes=1)
    raise ValueError("Could not compute next cron run within one year")


def _valid_part(part: str, min_value: int, max_value: int) -> bool:
    if part == "*":
        return True
    if part.startswith("*/"):
        return part[2:].isdigit() and int(part[2:]) > 0
    if "-" in part:
        start_s, _, end_s = part.partition("-")
        if not (start_s.isdigit() and end_s.isdigit()):
            return False
        return min_value <= int(start_s) <= int(end_s) <= max_value
    return part.isdigit() and min_value <= int(part) <= max_value


def _dow_match(field: str, when: datetime) -> bool:
    # cron counts Sunday as 0 (or 7); datetime.weekday() counts Monday as 0
    cron_dow = (when.weekday() + 1) % 7
    return _cron_match(field, cron_dow, 0) or (cron_dow == 0 and _cron_match(field, 7, 0))


def _cron_match(field: str, value: int, min_value: int) -> bool:
    token = str(field or "*").strip()
    if token == "*":
        return True
    if "," in token:
        return any(_cron_match(part, value, min_value) for part in token.split(","))
    if token.startswith("*/"):
        step = int(token[2:])
        return (value - min_value) % step == 0
    if "-" in token:
        start_s, end_s = token.split("-", 1)
        return int(start_s) <= value <= int(end_s)
    return int(token) == value
