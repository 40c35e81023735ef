"""Repository classes for database operations."""

from cadence.db.repositories.executions import ExecutionRepository
from cadence.db.repositories.machines import MachineRepository
from cadence.db.repositories.scheduled import ScheduledTaskRepository
from cadence.db.repositories.webhooks import WebhookRepository

__all__ = [
    "ExecutionRepository",
    "MachineRepository",
    "ScheduledTaskRepository",
    "WebhookRepository",
]
