"""Schedule variants, one per schedule type.

A task carries exactly one of these. Each variant holds only the fields its
schedule type needs, so a cron task can never carry an interval and vice
versa.
"""

from dataclasses import dataclass
from typing import Any, Union

from croniter import croniter  # type: ignore[import-untyped]

from cadence.db.models import ScheduleType, ThresholdMetric, ThresholdOp
from cadence.errors import ValidationError


def _choices(enum_cls: Any) -> str:
    return ", ".join(m.value for m in enum_cls)


@dataclass(frozen=True)
class CronSchedule:
    cron_expression: str

    schedule_type = ScheduleType.CRON


@dataclass(frozen=True)
class IntervalSchedule:
    interval_hours: int

    schedule_type = ScheduleType.INTERVAL


@dataclass(frozen=True)
class ThresholdSchedule:
    metric: ThresholdMetric
    op: ThresholdOp
    value: float

    schedule_type = ScheduleType.THRESHOLD


@dataclass(frozen=True)
class ManualSchedule:
    schedule_type = ScheduleType.MANUAL


Schedule = Union[CronSchedule, IntervalSchedule, ThresholdSchedule, ManualSchedule]


def validate_cron_expression(expression: str) -> str:
    """Return the normalized expression or raise ValidationError."""
    normalized = " ".join(expression.split())
    fields = normalized.split(" ") if normalized else []
    if len(fields) != 5:
        raise ValidationError(
            f"Invalid cron expression: expected 5 fields, got {len(fields)}"
        )
    if not croniter.is_valid(normalized):
        raise ValidationError(f"Invalid cron expression: {expression}")
    return normalized


def build_schedule(
    schedule_type: str | None,
    *,
    cron_expression: str | None = None,
    interval_hours: Any = None,
    threshold_metric: str | None = None,
    threshold_value: Any = None,
    threshold_op: str | None = None,
) -> Schedule:
    """Build the schedule variant for ``schedule_type``.

    Fields that do not belong to the chosen schedule type are ignored.

    Raises:
        ValidationError: if the type is unknown or its required fields are
            missing or invalid
    """
    try:
        kind = ScheduleType(schedule_type)
    except ValueError:
        raise ValidationError(
            f"scheduleType must be one of: {_choices(ScheduleType)}"
        ) from None

    if kind is ScheduleType.CRON:
        if not cron_expression:
            raise ValidationError("cronExpression is required")
        return CronSchedule(cron_expression=validate_cron_expression(cron_expression))

    if kind is ScheduleType.INTERVAL:
        if interval_hours is None or interval_hours == "":
            raise ValidationError("intervalHours is required")
        if (
            isinstance(interval_hours, bool)
            or not isinstance(interval_hours, int)
            or interval_hours <= 0
        ):
            raise ValidationError("intervalHours must be a positive integer")
        return IntervalSchedule(interval_hours=interval_hours)

    if kind is ScheduleType.THRESHOLD:
        if not threshold_metric or threshold_value is None or not threshold_op:
            raise ValidationError(
                "thresholdMetric, thresholdValue and thresholdOp are required"
            )
        try:
            metric = ThresholdMetric(threshold_metric)
        except ValueError:
            raise ValidationError(
                f"thresholdMetric must be one of: {_choices(ThresholdMetric)}"
            ) from None
        try:
            op = ThresholdOp(threshold_op)
        except ValueError:
            raise ValidationError(
                f"thresholdOp must be one of: {_choices(ThresholdOp)}"
            ) from None
        if isinstance(threshold_value, bool) or not isinstance(
            threshold_value, (int, float)
        ):
            raise ValidationError("thresholdValue must be a number")
        return ThresholdSchedule(metric=metric, op=op, value=float(threshold_value))

    return ManualSchedule()


def schedule_columns(schedule: Schedule) -> dict[str, Any]:
    """Flatten a schedule into the ScheduledTaskModel column values.

    Columns of the other schedule types are cleared.
    """
    values: dict[str, Any] = {
        "schedule_type": schedule.schedule_type,
        "cron_expression": None,
        "interval_hours": None,
        "threshold_metric": None,
        "threshold_value": None,
        "threshold_op": None,
    }
    if isinstance(schedule, CronSchedule):
        values["cron_expression"] = schedule.cron_expression
    elif isinstance(schedule, IntervalSchedule):
        values["interval_hours"] = schedule.interval_hours
    elif isinstance(schedule, ThresholdSchedule):
        values["threshold_metric"] = schedule.metric.value
        values["threshold_op"] = schedule.op.value
        values["threshold_value"] = schedule.value
    return values
