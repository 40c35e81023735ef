"""Task execution domain model."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from cadence.clock import as_utc
from cadence.db.models import ExecutionStatus, TaskExecutionModel, TriggerType


@dataclass
class TaskResult:
    """What a task body reports back on success."""

    projects_processed: int = 0
    issues_found: int = 0
    tokens_saved: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectsProcessed": self.projects_processed,
            "issuesFound": self.issues_found,
            "tokensSaved": self.tokens_saved,
            "details": self.details,
        }

    @classmethod
    def coerce(cls, value: Any) -> "TaskResult":
        """Accept a TaskResult, a dict of counters, or None from a task body."""
        if isinstance(value, TaskResult):
            return value
        if value is None:
            return cls()
        if isinstance(value, dict):
            return cls(
                projects_processed=int(
                    value.get("projectsProcessed", value.get("projects_processed", 0))
                ),
                issues_found=int(value.get("issuesFound", value.get("issues_found", 0))),
                tokens_saved=int(value.get("tokensSaved", value.get("tokens_saved", 0))),
                details=value.get("details") or {},
            )
        raise TypeError(f"Task body returned unsupported result type: {type(value)!r}")


@dataclass
class TaskExecution:
    execution_id: str
    task_id: str
    status: ExecutionStatus
    trigger_type: TriggerType
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    error_kind: str | None = None
    projects_processed: int = 0
    issues_found: int = 0
    tokens_saved: int = 0
    notifications_sent: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_model(cls, model: TaskExecutionModel) -> "TaskExecution":
        """Create a TaskExecution from a database model."""
        return cls(
            execution_id=model.execution_id,
            task_id=model.task_id,
            status=ExecutionStatus(model.status),
            trigger_type=TriggerType(model.trigger_type),
            started_at=as_utc(model.started_at),  # type: ignore[arg-type]
            completed_at=as_utc(model.completed_at),
            duration_ms=model.duration_ms,
            result=model.result,
            error=model.error,
            error_kind=model.error_kind,
            projects_processed=model.projects_processed,
            issues_found=model.issues_found,
            tokens_saved=model.tokens_saved,
            notifications_sent=list(model.notifications_sent or []),
        )
