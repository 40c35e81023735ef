"""Task execution repository for database operations.

Single-flight lives here: ``claim`` inserts a pending row and the partial
unique index on ``task_executions(task_id)`` rejects a second non-terminal
row for the same task. Every later transition is a conditional UPDATE on the
current status, so two instances racing on one execution cannot both win.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import Select, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.db.models import (
    ACTIVE_STATUSES,
    ExecutionStatus,
    ScheduledTaskModel,
    TaskExecutionModel,
    TriggerType,
)


def _filtered(
    query: Select[Any],
    task_id: str | None = None,
    status: ExecutionStatus | None = None,
    machine_id: str | None = None,
    trigger_type: TriggerType | None = None,
    since: datetime | None = None,
) -> Select[Any]:
    if task_id is not None:
        query = query.where(TaskExecutionModel.task_id == task_id)
    if status is not None:
        query = query.where(TaskExecutionModel.status == status)
    if trigger_type is not None:
        query = query.where(TaskExecutionModel.trigger_type == trigger_type)
    if since is not None:
        query = query.where(TaskExecutionModel.started_at >= since)
    if machine_id is not None:
        query = query.join(
            ScheduledTaskModel,
            ScheduledTaskModel.task_id == TaskExecutionModel.task_id,
        ).where(ScheduledTaskModel.machine_id == machine_id)
    return query


class ExecutionRepository:
    """Repository for task execution database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def claim(
        self,
        task_id: str,
        trigger_type: TriggerType,
        started_at: datetime,
    ) -> TaskExecutionModel:
        """Insert a pending execution for ``task_id``.

        Args:
            task_id: The task being claimed
            trigger_type: Why the execution was started
            started_at: Claim time

        Returns:
            The created TaskExecutionModel

        Raises:
            IntegrityError: if the task already has a pending or running
                execution
        """
        model = TaskExecutionModel(
            task_id=task_id,
            status=ExecutionStatus.PENDING,
            trigger_type=trigger_type,
            started_at=started_at,
            notifications_sent=[],
        )
        self.session.add(model)
        await self.session.flush()
        return model

    async def get(self, execution_id: str) -> TaskExecutionModel | None:
        result = await self.session.execute(
            select(TaskExecutionModel).where(
                TaskExecutionModel.execution_id == execution_id
            )
        )
        return result.scalar_one_or_none()

    async def get_active(self, task_id: str) -> TaskExecutionModel | None:
        """Get the pending or running execution of a task, if any."""
        result = await self.session.execute(
            select(TaskExecutionModel)
            .where(TaskExecutionModel.task_id == task_id)
            .where(TaskExecutionModel.status.in_(ACTIVE_STATUSES))
        )
        return result.scalar_one_or_none()

    async def mark_running(self, execution_id: str) -> TaskExecutionModel | None:
        """Move a pending execution to running.

        Returns:
            Updated TaskExecutionModel, or None if it is no longer pending
        """
        result = await self.session.execute(
            update(TaskExecutionModel)
            .where(TaskExecutionModel.execution_id == execution_id)
            .where(TaskExecutionModel.status == ExecutionStatus.PENDING)
            .values(status=ExecutionStatus.RUNNING)
            .returning(TaskExecutionModel)
        )
        return result.scalar_one_or_none()

    async def finalize(
        self,
        execution_id: str,
        status: ExecutionStatus,
        completed_at: datetime,
        duration_ms: int,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        error_kind: str | None = None,
        projects_processed: int = 0,
        issues_found: int = 0,
        tokens_saved: int = 0,
        notifications_sent: list[str] | None = None,
    ) -> TaskExecutionModel | None:
        """Write the single terminal update of a non-terminal execution.

        Args:
            execution_id: The execution to finalize
            status: completed, failed or cancelled
            completed_at: Terminal transition time
            duration_ms: Wall-clock run time
            result: Task body result payload
            error: Error message for failed/cancelled executions
            error_kind: error, timeout or cancelled
            projects_processed: Counter from the task body
            issues_found: Counter from the task body
            tokens_saved: Counter from the task body
            notifications_sent: Webhook IDs notified of the terminal event

        Returns:
            Updated TaskExecutionModel, or None if another writer already
            moved the execution to a terminal status
        """
        res = await self.session.execute(
            update(TaskExecutionModel)
            .where(TaskExecutionModel.execution_id == execution_id)
            .where(TaskExecutionModel.status.in_(ACTIVE_STATUSES))
            .values(
                status=status,
                completed_at=completed_at,
                duration_ms=duration_ms,
                result=result,
                error=error,
                error_kind=error_kind,
                projects_processed=projects_processed,
                issues_found=issues_found,
                tokens_saved=tokens_saved,
                notifications_sent=notifications_sent or [],
            )
            .returning(TaskExecutionModel)
        )
        return res.scalar_one_or_none()

    async def list_filtered(
        self,
        task_id: str | None = None,
        status: ExecutionStatus | None = None,
        machine_id: str | None = None,
        trigger_type: TriggerType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[TaskExecutionModel], int]:
        """List executions, newest first.

        Returns:
            Tuple of (page of executions, total matching count)
        """
        filters = dict(
            task_id=task_id,
            status=status,
            machine_id=machine_id,
            trigger_type=trigger_type,
        )
        total = await self.session.scalar(
            _filtered(select(func.count(TaskExecutionModel.execution_id)), **filters)
        )
        result = await self.session.execute(
            _filtered(select(TaskExecutionModel), **filters)
            .order_by(TaskExecutionModel.started_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total or 0

    async def list_for_tasks(
        self, task_ids: list[str], per_task: int
    ) -> dict[str, list[TaskExecutionModel]]:
        """Get the most recent ``per_task`` executions of each task."""
        if not task_ids:
            return {}
        ranked = (
            select(
                TaskExecutionModel.execution_id,
                func.row_number()
                .over(
                    partition_by=TaskExecutionModel.task_id,
                    order_by=TaskExecutionModel.started_at.desc(),
                )
                .label("rank"),
            )
            .where(TaskExecutionModel.task_id.in_(task_ids))
            .subquery()
        )
        result = await self.session.execute(
            select(TaskExecutionModel)
            .join(ranked, ranked.c.execution_id == TaskExecutionModel.execution_id)
            .where(ranked.c.rank <= per_task)
            .order_by(TaskExecutionModel.started_at.desc())
        )
        grouped: dict[str, list[TaskExecutionModel]] = {t: [] for t in task_ids}
        for model in result.scalars().all():
            grouped[model.task_id].append(model)
        return grouped

    async def list_running(self) -> list[TaskExecutionModel]:
        result = await self.session.execute(
            select(TaskExecutionModel)
            .where(TaskExecutionModel.status == ExecutionStatus.RUNNING)
            .order_by(TaskExecutionModel.started_at.asc())
        )
        return list(result.scalars().all())

    async def stats(
        self,
        task_id: str | None = None,
        status: ExecutionStatus | None = None,
        machine_id: str | None = None,
        trigger_type: TriggerType | None = None,
        since: datetime | None = None,
    ) -> dict[str, Any]:
        """Aggregate executions matching the filters.

        Token, project and duration aggregates cover completed executions
        only.

        Returns:
            Dict with per-status counts, totalTokensSaved,
            totalProjectsProcessed and avgDurationMs
        """
        completed = TaskExecutionModel.status == ExecutionStatus.COMPLETED
        query = select(
            TaskExecutionModel.status,
            func.count(TaskExecutionModel.execution_id),
            func.coalesce(
                func.sum(case((completed, TaskExecutionModel.tokens_saved), else_=0)),
                0,
            ),
            func.coalesce(
                func.sum(
                    case((completed, TaskExecutionModel.projects_processed), else_=0)
                ),
                0,
            ),
            func.sum(case((completed, TaskExecutionModel.duration_ms), else_=None)),
            func.count(case((completed, TaskExecutionModel.duration_ms), else_=None)),
        ).group_by(TaskExecutionModel.status)
        result = await self.session.execute(
            _filtered(
                query,
                task_id=task_id,
                status=status,
                machine_id=machine_id,
                trigger_type=trigger_type,
                since=since,
            )
        )

        stats: dict[str, Any] = {s.value: 0 for s in ExecutionStatus}
        total = tokens = projects = duration_sum = duration_count = 0
        for row_status, count, row_tokens, row_projects, row_duration, row_n in result.all():
            stats[ExecutionStatus(row_status).value] = count
            total += count
            tokens += int(row_tokens or 0)
            projects += int(row_projects or 0)
            duration_sum += int(row_duration or 0)
            duration_count += int(row_n or 0)

        stats["total"] = total
        stats["totalTokensSaved"] = tokens
        stats["totalProjectsProcessed"] = projects
        stats["avgDurationMs"] = (
            round(duration_sum / duration_count) if duration_count else 0
        )
        return stats
