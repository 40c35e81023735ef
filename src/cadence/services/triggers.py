"""Trigger evaluation: deciding whether a task is due.

Everything here is pure. The poll loop supplies ``now`` and the metric
snapshot; nothing reads the clock or the database.
"""

import operator
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

from croniter import croniter  # type: ignore[import-untyped]

from cadence.clock import as_utc
from cadence.db.models import ThresholdOp
from cadence.errors import ValidationError
from cadence.models.schedule import (
    CronSchedule,
    IntervalSchedule,
    ThresholdSchedule,
    validate_cron_expression,
)
from cadence.models.scheduled_task import ScheduledTask

__all__ = [
    "compute_next_run",
    "describe_cron_expression",
    "evaluate_threshold",
    "is_due",
    "next_cron_run",
    "validate_cron_expression",
]

_OPERATORS: dict[ThresholdOp, Callable[[float, float], bool]] = {
    ThresholdOp.LT: operator.lt,
    ThresholdOp.LTE: operator.le,
    ThresholdOp.GT: operator.gt,
    ThresholdOp.GTE: operator.ge,
}

_DAYS = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def next_cron_run(expression: str, base: datetime) -> datetime:
    """First fire time of ``expression`` strictly after ``base`` (UTC)."""
    return croniter(expression, as_utc(base)).get_next(datetime)


def evaluate_threshold(value: float, op: ThresholdOp | str, threshold: float) -> bool:
    return _OPERATORS[ThresholdOp(op)](value, threshold)


def is_due(
    task: ScheduledTask,
    now: datetime,
    metrics: Mapping[str, float] | None = None,
    threshold_cooldown: timedelta = timedelta(0),
) -> bool:
    """Whether ``task`` should fire at ``now``.

    Args:
        task: The task definition
        now: Evaluation time
        metrics: Metric snapshot for the task's scope, used by threshold
            tasks; a missing metric never fires
        threshold_cooldown: Minimum gap after the last run before a
            threshold task may fire again

    Returns:
        True if the task is due. Disabled and manual tasks never are.
    """
    if not task.enabled:
        return False

    schedule = task.schedule
    last_run_at = as_utc(task.last_run_at)

    if isinstance(schedule, CronSchedule):
        base = last_run_at or as_utc(task.created_at)
        return next_cron_run(schedule.cron_expression, base) <= now

    if isinstance(schedule, IntervalSchedule):
        if last_run_at is None:
            return True
        return now - last_run_at >= timedelta(hours=schedule.interval_hours)

    if isinstance(schedule, ThresholdSchedule):
        value = (metrics or {}).get(schedule.metric.value)
        if value is None:
            return False
        if (
            threshold_cooldown > timedelta(0)
            and last_run_at is not None
            and now - last_run_at < threshold_cooldown
        ):
            return False
        return evaluate_threshold(value, schedule.op, schedule.value)

    return False


def compute_next_run(task: ScheduledTask, now: datetime) -> datetime | None:
    """Cached next fire time for display and ordering.

    Cron tasks fire next after ``now``. Interval tasks fire
    ``interval_hours`` after their last run, or immediately if they never
    ran. Threshold and manual tasks have no scheduled time.
    """
    schedule = task.schedule
    if isinstance(schedule, CronSchedule):
        return next_cron_run(schedule.cron_expression, now)
    if isinstance(schedule, IntervalSchedule):
        last_run_at = as_utc(task.last_run_at)
        if last_run_at is None:
            return now
        return last_run_at + timedelta(hours=schedule.interval_hours)
    return None


def _format_time(hour: int, minute: int) -> str:
    period = "PM" if hour >= 12 else "AM"
    return f"{hour % 12 or 12}:{minute:02d} {period}"


def _field(values: list) -> int | str | list[int]:
    if values == ["*"]:
        return "*"
    if len(values) == 1:
        return int(values[0])
    return [int(v) for v in values]


def _describe_field(value: int | str | list[int], singular: str, plural: str) -> str:
    if value == "*":
        return f"every {singular}"
    if isinstance(value, int):
        return f"at {singular} {value}"
    return f"at {plural} {', '.join(str(v) for v in value)}"


def describe_cron_expression(expression: str) -> str:
    """Human-readable summary such as "Every day at 9:00 AM".

    Unrecognized shapes fall back to a field-by-field description, and
    unparseable expressions are returned unchanged.
    """
    try:
        expanded = croniter(validate_cron_expression(expression)).expanded
    except (ValidationError, ValueError):
        return expression

    minute, hour, day, month, weekday = (_field(f) for f in expanded)
    plain_date = day == "*" and month == "*"

    if isinstance(minute, int) and isinstance(hour, int):
        at = _format_time(hour, minute)
        if plain_date and weekday == "*":
            return f"Every day at {at}"
        if plain_date and isinstance(weekday, int):
            return f"Every {_DAYS[weekday % 7]} at {at}"
        if isinstance(day, int) and month == "*" and weekday == "*":
            return f"Day {day} of every month at {at}"

    if isinstance(minute, int) and plain_date and weekday == "*":
        if hour == "*":
            return f"Every hour at minute {minute}"
        if isinstance(hour, list) and len(hour) > 1:
            step = hour[1] - hour[0]
            if all(h == i * step for i, h in enumerate(hour)):
                return f"Every {step} hours at minute {minute}"

    parts = [
        _describe_field(minute, "minute", "minutes"),
        _describe_field(hour, "hour", "hours"),
    ]
    if isinstance(day, int):
        parts.append(f"on day {day}")
    elif isinstance(day, list):
        parts.append(f"on days {', '.join(str(d) for d in day)}")
    if isinstance(weekday, int):
        parts.append(_DAYS[weekday % 7])
    elif isinstance(weekday, list):
        parts.append(", ".join(_DAYS[d % 7] for d in weekday))
    return " ".join(parts)
