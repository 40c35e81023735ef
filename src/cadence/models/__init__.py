from .api import (
    MachineCreate,
    MetricsReport,
    ScheduledTaskCreate,
    ScheduledTaskUpdate,
    TaskRunRequest,
    WebhookCreate,
    WebhookUpdate,
)
from .execution import TaskExecution, TaskResult
from .schedule import (
    CronSchedule,
    IntervalSchedule,
    ManualSchedule,
    Schedule,
    ThresholdSchedule,
)
from .scheduled_task import ScheduledTask
from .webhook import WebhookConfig

__all__ = [
    # API schemas
    "MachineCreate",
    "MetricsReport",
    "ScheduledTaskCreate",
    "ScheduledTaskUpdate",
    "TaskRunRequest",
    "WebhookCreate",
    "WebhookUpdate",
    # Domain models
    "CronSchedule",
    "IntervalSchedule",
    "ManualSchedule",
    "Schedule",
    "ScheduledTask",
    "TaskExecution",
    "TaskResult",
    "ThresholdSchedule",
    "WebhookConfig",
]
