"""
Cron-like schedule expressions for subscriptions.

Five whitespace-separated fields: minute hour day-of-month month day-of-week.
Each field is ``*``, ``*/n``, ``n``, ``a-b``, ``a-b/n`` or a comma list of
numbers and ranges.
"""

import re

_FIELDS: tuple[tuple[str, int, int], ...] = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)

_STEP = re.compile(r"^\*/(\d+)$")
_RANGE = re.compile(r"^(\d+)-(\d+)(?:/(\d+))?$")


class ScheduleError(ValueError):
    """Raised for a malformed schedule expression."""


def _check_number(token: str, name: str, low: int, high: int) -> int:
    value = int(token)
    if not low <= value <= high:
        raise ScheduleError(f"{name} value {value} outside {low}-{high}")
    return value


def _check_part(part: str, name: str, low: int, high: int) -> None:
    if part == "*":
        return
    if match := _STEP.match(part):
        if int(match.group(1)) == 0:
            raise ScheduleError(f"{name} step must be positive")
        return
    if match := _RANGE.match(part):
        start = _check_number(match.group(1), name, low, high)
        end = _check_number(match.group(2), name, low, high)
        if start > end:
            raise ScheduleError(f"{name} range {start}-{end} is reversed")
        if match.group(3) is not None and int(match.group(3)) == 0:
            raise ScheduleError(f"{name} step must be positive")
        return
    if part.isascii() and part.isdigit():
        _check_number(part, name, low, high)
        return
    raise ScheduleError(f"{name} field has invalid token {part!r}")


def validate_schedule(expression: str) -> str:
    """
    Validate a schedule expression and return it with normalised whitespace.

    Raises:
        ScheduleError: If the expression is not a valid five-field schedule
    """
    fields = expression.split()
    if len(fields) != len(_FIELDS):
        raise ScheduleError(
            f"schedule must have {len(_FIELDS)} fields (minute hour day month weekday), "
            f"got {len(fields)}"
        )
    for value, (name, low, high) in zip(fields, _FIELDS, strict=True):
        for part in value.split(","):
            _check_part(part, name, low, high)
    return " ".join(fields)


def is_recurring(expression: str | None) -> bool:
    """A schedule recurs when any field is a wildcard or a step."""
    return bool(expression) and ("*" in expression or "/" in expression)
