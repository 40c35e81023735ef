"""SQLAlchemy ORM models for the scheduler."""

import enum
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, JSON text everywhere else
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    """Enum stored as its string value in a VARCHAR with a CHECK constraint."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        values_callable=lambda e: [m.value for m in e],
    )


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TaskType(str, enum.Enum):
    """Which task body the engine invokes."""

    ANALYZE_CONTEXT = "analyze_context"
    HEALTH_CHECK = "health_check"
    GENERATE_RECOMMENDATIONS = "generate_recommendations"
    CUSTOM = "custom"


class ScheduleType(str, enum.Enum):
    CRON = "cron"
    INTERVAL = "interval"
    THRESHOLD = "threshold"
    MANUAL = "manual"


class ThresholdMetric(str, enum.Enum):
    HEALTH_SCORE = "health_score"
    CONTEXT_TOKENS = "context_tokens"
    OPTIMIZATION_SCORE = "optimization_score"
    ISSUE_COUNT = "issue_count"


class ThresholdOp(str, enum.Enum):
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"


class ExecutionStatus(str, enum.Enum):
    """Execution lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
)
ACTIVE_STATUSES = (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


class TriggerType(str, enum.Enum):
    """Why an execution was started."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    THRESHOLD = "threshold"
    WEBHOOK = "webhook"


class WebhookType(str, enum.Enum):
    SLACK = "slack"
    DISCORD = "discord"
    N8N = "n8n"
    GENERIC = "generic"


class WebhookEventType(str, enum.Enum):
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    THRESHOLD_TRIGGERED = "threshold_triggered"
    OPTIMIZATION_APPLIED = "optimization_applied"
    HEALTH_ALERT = "health_alert"


class MachineModel(Base):
    """A registered fleet machine and its latest reported metrics."""

    __tablename__ = "machines"

    machine_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    hostname: Mapped[str | None] = mapped_column(String(255), nullable=True)
    platform: Mapped[str | None] = mapped_column(String(50), nullable=True)
    metrics: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    metrics_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class ScheduledTaskModel(Base):
    """Scheduled task definition."""

    __tablename__ = "scheduled_tasks"

    task_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    task_type: Mapped[TaskType] = mapped_column(
        _enum_column(TaskType, "task_type"),
        nullable=False,
    )
    schedule_type: Mapped[ScheduleType] = mapped_column(
        _enum_column(ScheduleType, "schedule_type"),
        nullable=False,
    )
    cron_expression: Mapped[str | None] = mapped_column(String(255), nullable=True)
    interval_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    threshold_metric: Mapped[str | None] = mapped_column(String(50), nullable=True)
    threshold_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    threshold_op: Mapped[str | None] = mapped_column(String(8), nullable=True)
    task_config: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    machine_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("machines.machine_id", ondelete="SET NULL"),
        nullable=True,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_on_success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_on_failure: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )
    last_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        # Names are unique among live tasks; soft-deleted rows keep theirs
        Index(
            "uq_scheduled_tasks_live_name",
            "name",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )


class TaskExecutionModel(Base):
    """One run of a scheduled task. Append-only once terminal."""

    __tablename__ = "task_executions"

    execution_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    task_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("scheduled_tasks.task_id"),
        nullable=False,
    )
    status: Mapped[ExecutionStatus] = mapped_column(
        _enum_column(ExecutionStatus, "execution_status"),
        nullable=False,
        default=ExecutionStatus.PENDING,
    )
    trigger_type: Mapped[TriggerType] = mapped_column(
        _enum_column(TriggerType, "trigger_type"),
        nullable=False,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(20), nullable=True)
    projects_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    issues_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_saved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notifications_sent: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )

    __table_args__ = (
        # Single-flight: at most one pending/running execution per task
        Index(
            "uq_task_executions_active_task",
            "task_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'running')"),
            sqlite_where=text("status IN ('pending', 'running')"),
        ),
        Index("ix_task_executions_started_at", "started_at"),
    )


class WebhookConfigModel(Base):
    """Outbound notification target."""

    __tablename__ = "webhook_configs"

    webhook_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_type: Mapped[WebhookType] = mapped_column(
        _enum_column(WebhookType, "webhook_type"),
        nullable=False,
    )
    webhook_url: Mapped[str] = mapped_column(Text, nullable=False)
    config: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    event_types: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    machine_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("machines.machine_id", ondelete="SET NULL"),
        nullable=True,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )
