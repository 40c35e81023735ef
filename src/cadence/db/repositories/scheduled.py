"""Scheduled task repository for database operations."""

from datetime import datetime, timezone
from typing import Any, cast

from sqlalchemy import CursorResult, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.db.models import ScheduledTaskModel, ScheduleType


class ScheduledTaskRepository:
    """Repository for scheduled task database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        name: str,
        task_type: str,
        schedule: dict[str, Any],
        description: str | None = None,
        task_config: dict[str, Any] | None = None,
        machine_id: str | None = None,
        enabled: bool = True,
        notify_on_success: bool = True,
        notify_on_failure: bool = True,
        next_run_at: datetime | None = None,
        task_id: str | None = None,
    ) -> ScheduledTaskModel:
        """Create a new scheduled task.

        Args:
            name: Task name, unique among live tasks
            task_type: Which task body to invoke
            schedule: Schedule column values from ``schedule_columns``
            description: Optional description
            task_config: Configuration passed to the task body
            machine_id: Optional machine scope
            enabled: Whether the poll loop considers this task
            notify_on_success: Send task_completed notifications
            notify_on_failure: Send task_failed notifications
            next_run_at: Cached next fire time
            task_id: Optional specific task ID

        Returns:
            The created ScheduledTaskModel

        Raises:
            IntegrityError: if a live task already uses ``name``
        """
        model = ScheduledTaskModel(
            name=name,
            description=description,
            task_type=task_type,
            task_config=task_config or {},
            machine_id=machine_id,
            enabled=enabled,
            notify_on_success=notify_on_success,
            notify_on_failure=notify_on_failure,
            next_run_at=next_run_at,
            **schedule,
        )
        if task_id:
            model.task_id = task_id

        self.session.add(model)
        await self.session.flush()
        return model

    async def get(
        self, task_id: str, include_deleted: bool = False
    ) -> ScheduledTaskModel | None:
        """Get a scheduled task by ID.

        Args:
            task_id: The task ID to fetch
            include_deleted: Also return soft-deleted tasks (execution
                history still points at them)

        Returns:
            ScheduledTaskModel if found, None otherwise
        """
        query = select(ScheduledTaskModel).where(ScheduledTaskModel.task_id == task_id)
        if not include_deleted:
            query = query.where(ScheduledTaskModel.deleted_at.is_(None))
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_many(self, task_ids: list[str]) -> dict[str, ScheduledTaskModel]:
        """Fetch tasks by ID, deleted ones included, keyed by task_id."""
        if not task_ids:
            return {}
        result = await self.session.execute(
            select(ScheduledTaskModel).where(ScheduledTaskModel.task_id.in_(task_ids))
        )
        return {t.task_id: t for t in result.scalars().all()}

    async def list_all(
        self,
        machine_id: str | None = None,
        enabled: bool | None = None,
        task_type: str | None = None,
    ) -> list[ScheduledTaskModel]:
        """Get all non-deleted scheduled tasks, newest first.

        Args:
            machine_id: Only tasks scoped to this machine
            enabled: Only tasks with this enabled state
            task_type: Only tasks of this type

        Returns:
            List of ScheduledTaskModel instances
        """
        query = select(ScheduledTaskModel).where(ScheduledTaskModel.deleted_at.is_(None))
        if machine_id is not None:
            query = query.where(ScheduledTaskModel.machine_id == machine_id)
        if enabled is not None:
            query = query.where(ScheduledTaskModel.enabled.is_(enabled))
        if task_type is not None:
            query = query.where(ScheduledTaskModel.task_type == task_type)
        result = await self.session.execute(
            query.order_by(ScheduledTaskModel.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_pollable(self) -> list[ScheduledTaskModel]:
        """Get enabled tasks the poll loop should evaluate (everything but manual).

        Returns:
            List of ScheduledTaskModel instances, soonest next_run_at first
        """
        result = await self.session.execute(
            select(ScheduledTaskModel)
            .where(ScheduledTaskModel.enabled.is_(True))
            .where(ScheduledTaskModel.deleted_at.is_(None))
            .where(ScheduledTaskModel.schedule_type != ScheduleType.MANUAL)
            .order_by(ScheduledTaskModel.next_run_at.asc())
        )
        return list(result.scalars().all())

    async def list_upcoming(self, until: datetime) -> list[ScheduledTaskModel]:
        """Get enabled tasks whose next_run_at falls on or before ``until``."""
        result = await self.session.execute(
            select(ScheduledTaskModel)
            .where(ScheduledTaskModel.enabled.is_(True))
            .where(ScheduledTaskModel.deleted_at.is_(None))
            .where(ScheduledTaskModel.next_run_at.is_not(None))
            .where(ScheduledTaskModel.next_run_at <= until)
            .order_by(ScheduledTaskModel.next_run_at.asc())
        )
        return list(result.scalars().all())

    async def get_next(self) -> ScheduledTaskModel | None:
        """Get the enabled task that fires soonest."""
        result = await self.session.execute(
            select(ScheduledTaskModel)
            .where(ScheduledTaskModel.enabled.is_(True))
            .where(ScheduledTaskModel.deleted_at.is_(None))
            .where(ScheduledTaskModel.next_run_at.is_not(None))
            .order_by(ScheduledTaskModel.next_run_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count(self) -> dict[str, int]:
        """Count live tasks by enabled state.

        Returns:
            Dict with total, enabled and disabled counts
        """
        result = await self.session.execute(
            select(ScheduledTaskModel.enabled, func.count())
            .where(ScheduledTaskModel.deleted_at.is_(None))
            .group_by(ScheduledTaskModel.enabled)
        )
        counts = {bool(enabled): n for enabled, n in result.all()}
        enabled = counts.get(True, 0)
        disabled = counts.get(False, 0)
        return {"total": enabled + disabled, "enabled": enabled, "disabled": disabled}

    async def update(
        self,
        task_id: str,
        values: dict[str, Any],
    ) -> ScheduledTaskModel | None:
        """Update a scheduled task.

        Unlike a PATCH body, ``values`` is applied as given: a None value
        clears the column.

        Args:
            task_id: The task ID to update
            values: Column values to write

        Returns:
            Updated ScheduledTaskModel if found

        Raises:
            IntegrityError: if a rename collides with another live task
        """
        if not values:
            return await self.get(task_id)

        values = {**values, "updated_at": datetime.now(timezone.utc)}
        result = await self.session.execute(
            update(ScheduledTaskModel)
            .where(ScheduledTaskModel.task_id == task_id)
            .where(ScheduledTaskModel.deleted_at.is_(None))
            .values(**values)
            .returning(ScheduledTaskModel)
        )
        return result.scalar_one_or_none()

    async def mark_run(
        self,
        task_id: str,
        last_run_at: datetime,
        next_run_at: datetime | None,
    ) -> ScheduledTaskModel | None:
        """Record a run and refresh the cached next fire time.

        Soft-deleted tasks are left untouched.

        Args:
            task_id: The task that ran
            last_run_at: When the run was claimed
            next_run_at: Next fire time, None for threshold/manual tasks

        Returns:
            Updated ScheduledTaskModel if the task is still live
        """
        result = await self.session.execute(
            update(ScheduledTaskModel)
            .where(ScheduledTaskModel.task_id == task_id)
            .where(ScheduledTaskModel.deleted_at.is_(None))
            .values(
                last_run_at=last_run_at,
                next_run_at=next_run_at,
                updated_at=datetime.now(timezone.utc),
            )
            .returning(ScheduledTaskModel)
        )
        return result.scalar_one_or_none()

    async def soft_delete(self, task_id: str) -> bool:
        """Soft delete a scheduled task. Its execution history is kept.

        Args:
            task_id: The task ID to delete

        Returns:
            True if deleted, False if not found
        """
        result = await self.session.execute(
            update(ScheduledTaskModel)
            .where(ScheduledTaskModel.task_id == task_id)
            .where(ScheduledTaskModel.deleted_at.is_(None))
            .values(
                deleted_at=datetime.now(timezone.utc),
                enabled=False,
                next_run_at=None,
            )
        )
        return (cast(CursorResult[Any], result).rowcount or 0) > 0
