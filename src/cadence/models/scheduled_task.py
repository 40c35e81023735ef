"""Scheduled task domain model."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from cadence.clock import as_utc, utcnow
from cadence.db.models import (
    ScheduledTaskModel,
    ScheduleType,
    TaskType,
    ThresholdMetric,
    ThresholdOp,
)
from cadence.models.schedule import (
    CronSchedule,
    IntervalSchedule,
    ManualSchedule,
    Schedule,
    ThresholdSchedule,
)


def schedule_from_model(model: ScheduledTaskModel) -> Schedule:
    """Rebuild the schedule variant from stored columns."""
    kind = ScheduleType(model.schedule_type)
    if kind is ScheduleType.CRON and model.cron_expression:
        return CronSchedule(cron_expression=model.cron_expression)
    if kind is ScheduleType.INTERVAL and model.interval_hours:
        return IntervalSchedule(interval_hours=model.interval_hours)
    if (
        kind is ScheduleType.THRESHOLD
        and model.threshold_metric
        and model.threshold_op
        and model.threshold_value is not None
    ):
        return ThresholdSchedule(
            metric=ThresholdMetric(model.threshold_metric),
            op=ThresholdOp(model.threshold_op),
            value=model.threshold_value,
        )
    return ManualSchedule()


@dataclass
class ScheduledTask:
    """A task definition as seen by the evaluator and the engine."""

    task_id: str
    name: str
    task_type: TaskType
    schedule: Schedule
    description: str | None = None
    task_config: dict[str, Any] = field(default_factory=dict)
    machine_id: str | None = None
    enabled: bool = True
    notify_on_success: bool = True
    notify_on_failure: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None

    @property
    def schedule_type(self) -> ScheduleType:
        return self.schedule.schedule_type

    @classmethod
    def from_model(cls, model: ScheduledTaskModel) -> "ScheduledTask":
        """Create a ScheduledTask from a database model."""
        return cls(
            task_id=model.task_id,
            name=model.name,
            description=model.description,
            task_type=TaskType(model.task_type),
            schedule=schedule_from_model(model),
            task_config=model.task_config or {},
            machine_id=model.machine_id,
            enabled=model.enabled,
            notify_on_success=model.notify_on_success,
            notify_on_failure=model.notify_on_failure,
            created_at=as_utc(model.created_at) or utcnow(),
            updated_at=as_utc(model.updated_at),
            last_run_at=as_utc(model.last_run_at),
            next_run_at=as_utc(model.next_run_at),
        )
