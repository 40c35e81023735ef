"""Database module for the Cadence scheduler."""

from cadence.db.engine import create_engine, create_session_factory, get_session
from cadence.db.models import (
    Base,
    MachineModel,
    ScheduledTaskModel,
    TaskExecutionModel,
    WebhookConfigModel,
)

__all__ = [
    "create_engine",
    "create_session_factory",
    "get_session",
    "Base",
    "MachineModel",
    "ScheduledTaskModel",
    "TaskExecutionModel",
    "WebhookConfigModel",
]
