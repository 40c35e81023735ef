"""Task definitions: CRUD, validation and read-side aggregates."""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cadence.clock import isoformat, utcnow
from cadence.db.engine import get_session
from cadence.db.models import (
    ExecutionStatus,
    ScheduledTaskModel,
    TaskExecutionModel,
    TaskType,
)
from cadence.db.repositories.executions import ExecutionRepository
from cadence.db.repositories.machines import MachineRepository
from cadence.db.repositories.scheduled import ScheduledTaskRepository
from cadence.errors import ConflictError, NotFoundError, ValidationError
from cadence.models.api import ScheduledTaskCreate, ScheduledTaskUpdate
from cadence.models.execution import TaskExecution
from cadence.models.schedule import build_schedule, schedule_columns
from cadence.models.scheduled_task import ScheduledTask
from cadence.services.serializers import (
    execution_to_dict,
    machine_ref,
    schedule_fields,
    task_to_dict,
)
from cadence.services.triggers import compute_next_run

logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = (
    "schedule_type",
    "cron_expression",
    "interval_hours",
    "threshold_metric",
    "threshold_value",
    "threshold_op",
)

RECENT_EXECUTIONS = 5
DETAIL_EXECUTIONS = 20


def parse_task_type(value: str | None) -> TaskType:
    try:
        return TaskType(value)
    except ValueError:
        choices = ", ".join(t.value for t in TaskType)
        raise ValidationError(f"taskType must be one of: {choices}") from None


def _running_entry(
    execution: TaskExecutionModel, task: ScheduledTaskModel | None
) -> dict[str, Any]:
    return {
        "executionId": execution.execution_id,
        "taskId": execution.task_id,
        "taskName": task.name if task else None,
        "taskType": TaskType(task.task_type).value if task else None,
        "startedAt": isoformat(execution.started_at),
    }


def _require_name(name: str | None) -> str:
    if name is None or not name.strip():
        raise ValidationError("name is required")
    return name.strip()


class TaskService:
    """Creates, updates and reports on scheduled task definitions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, data: ScheduledTaskCreate) -> dict[str, Any]:
        """Create a task definition.

        Raises:
            ValidationError: on a missing name, unknown type or bad schedule
            NotFoundError: if ``machineId`` names an unknown machine
            ConflictError: if a live task already has this name
        """
        name = _require_name(data.name)
        task_type = parse_task_type(data.task_type)
        schedule = build_schedule(
            data.schedule_type,
            cron_expression=data.cron_expression,
            interval_hours=data.interval_hours,
            threshold_metric=data.threshold_metric,
            threshold_value=data.threshold_value,
            threshold_op=data.threshold_op,
        )

        now = utcnow()
        draft = ScheduledTask(
            task_id="",
            name=name,
            task_type=task_type,
            schedule=schedule,
            enabled=data.enabled,
            created_at=now,
        )
        try:
            async with get_session(self._session_factory) as session:
                machine = None
                if data.machine_id is not None:
                    machine = await MachineRepository(session).get(data.machine_id)
                    if machine is None:
                        raise NotFoundError("Machine not found")
                model = await ScheduledTaskRepository(session).create(
                    name=name,
                    task_type=task_type.value,
                    schedule=schedule_columns(schedule),
                    description=data.description,
                    task_config=data.task_config,
                    machine_id=data.machine_id,
                    enabled=data.enabled,
                    notify_on_success=data.notify_on_success,
                    notify_on_failure=data.notify_on_failure,
                    next_run_at=compute_next_run(draft, now) if data.enabled else None,
                )
        except IntegrityError:
            raise ConflictError(f"A task named '{name}' already exists") from None

        task = ScheduledTask.from_model(model)
        logger.info(f"Created task {task.task_id} ({task.name}, {task.schedule_type.value})")
        return task_to_dict(task, machine)

    async def list_tasks(
        self,
        machine_id: str | None = None,
        enabled: bool | None = None,
        task_type: str | None = None,
    ) -> list[dict[str, Any]]:
        """List live tasks with their recent executions and run stats."""
        if task_type is not None:
            task_type = parse_task_type(task_type).value

        async with self._session_factory() as session:
            models = await ScheduledTaskRepository(session).list_all(
                machine_id=machine_id, enabled=enabled, task_type=task_type
            )
            task_ids = [m.task_id for m in models]
            recent = await ExecutionRepository(session).list_for_tasks(
                task_ids, RECENT_EXECUTIONS
            )
            machines = await MachineRepository(session).get_many(
                [m.machine_id for m in models if m.machine_id]
            )

        tasks = []
        for model in models:
            task = ScheduledTask.from_model(model)
            executions = [TaskExecution.from_model(e) for e in recent.get(task.task_id, [])]
            body = task_to_dict(task, machines.get(task.machine_id or ""))
            body["recentExecutions"] = [execution_to_dict(e) for e in executions]
            body["stats"] = {
                "recentRuns": len(executions),
                "successfulRuns": sum(
                    1 for e in executions if e.status is ExecutionStatus.COMPLETED
                ),
                "failedRuns": sum(1 for e in executions if e.status is ExecutionStatus.FAILED),
                "totalTokensSaved": sum(
                    e.tokens_saved
                    for e in executions
                    if e.status is ExecutionStatus.COMPLETED
                ),
            }
            tasks.append(body)
        return tasks

    async def get(self, task_id: str) -> dict[str, Any]:
        """Task detail with its 20 most recent executions and all-time stats.

        Raises:
            NotFoundError: if the task does not exist
        """
        async with self._session_factory() as session:
            model = await ScheduledTaskRepository(session).get(task_id)
            if model is None:
                raise NotFoundError("Task not found")
            executions_repo = ExecutionRepository(session)
            executions, _ = await executions_repo.list_filtered(
                task_id=task_id, limit=DETAIL_EXECUTIONS
            )
            stats = await executions_repo.stats(task_id=task_id)
            machine = (
                await MachineRepository(session).get(model.machine_id)
                if model.machine_id
                else None
            )

        body = task_to_dict(ScheduledTask.from_model(model), machine)
        body["executions"] = [
            execution_to_dict(TaskExecution.from_model(e)) for e in executions
        ]
        body["stats"] = {
            "totalRuns": stats["total"],
            "successfulRuns": stats[ExecutionStatus.COMPLETED.value],
            "failedRuns": stats[ExecutionStatus.FAILED.value],
            "totalTokensSaved": stats["totalTokensSaved"],
            "totalProjectsProcessed": stats["totalProjectsProcessed"],
        }
        return body

    async def get_summary(self, task_id: str) -> dict[str, Any]:
        """Task fields only, soft-deleted tasks included."""
        async with self._session_factory() as session:
            model = await ScheduledTaskRepository(session).get(task_id, include_deleted=True)
            if model is None:
                raise NotFoundError("Task not found")
            machine = (
                await MachineRepository(session).get(model.machine_id)
                if model.machine_id
                else None
            )
        return task_to_dict(ScheduledTask.from_model(model), machine)

    async def update(self, task_id: str, data: ScheduledTaskUpdate) -> dict[str, Any]:
        """Apply a partial update.

        Schedule fields are merged over the stored schedule and re-validated
        as a whole, so switching ``scheduleType`` requires that type's fields.

        Raises:
            NotFoundError: if the task or a given ``machineId`` does not exist
            ValidationError: if the merged task is invalid
            ConflictError: if a rename collides with another live task
        """
        patch = data.model_dump(exclude_unset=True)
        try:
            async with get_session(self._session_factory) as session:
                repo = ScheduledTaskRepository(session)
                model = await repo.get(task_id)
                if model is None:
                    raise NotFoundError("Task not found")
                current = ScheduledTask.from_model(model)
                values = await self._validated_values(session, current, model, patch)
                if values:
                    model = await repo.update(task_id, values)
                    if model is None:
                        raise NotFoundError("Task not found")
                machine = (
                    await MachineRepository(session).get(model.machine_id)
                    if model.machine_id
                    else None
                )
        except IntegrityError:
            raise ConflictError(f"A task named '{patch.get('name')}' already exists") from None

        task = ScheduledTask.from_model(model)
        logger.info(f"Updated task {task_id}: {', '.join(sorted(patch)) or 'no changes'}")
        return task_to_dict(task, machine)

    async def _validated_values(
        self,
        session: AsyncSession,
        current: ScheduledTask,
        model: ScheduledTaskModel,
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        values: dict[str, Any] = {}

        if "name" in patch:
            values["name"] = _require_name(patch["name"])
        if "description" in patch:
            values["description"] = patch["description"]
        if "task_type" in patch:
            values["task_type"] = parse_task_type(patch["task_type"]).value
        if "task_config" in patch:
            values["task_config"] = patch["task_config"] or {}
        for flag in ("enabled", "notify_on_success", "notify_on_failure"):
            if patch.get(flag) is not None:
                values[flag] = patch[flag]
        if "machine_id" in patch:
            machine_id = patch["machine_id"]
            if machine_id is not None and not await MachineRepository(session).exists(
                machine_id
            ):
                raise NotFoundError("Machine not found")
            values["machine_id"] = machine_id

        schedule = current.schedule
        if any(f in patch for f in SCHEDULE_FIELDS):
            stored = {
                "schedule_type": model.schedule_type,
                "cron_expression": model.cron_expression,
                "interval_hours": model.interval_hours,
                "threshold_metric": model.threshold_metric,
                "threshold_value": model.threshold_value,
                "threshold_op": model.threshold_op,
            }
            merged = {**stored, **{f: patch[f] for f in SCHEDULE_FIELDS if f in patch}}
            schedule_type = merged.pop("schedule_type")
            schedule = build_schedule(
                getattr(schedule_type, "value", schedule_type), **merged
            )
            values.update(schedule_columns(schedule))

        if "enabled" in values or any(f in patch for f in SCHEDULE_FIELDS):
            enabled = values.get("enabled", current.enabled)
            now = utcnow()
            draft = ScheduledTask(
                task_id=current.task_id,
                name=current.name,
                task_type=current.task_type,
                schedule=schedule,
                last_run_at=current.last_run_at,
                created_at=current.created_at,
            )
            values["next_run_at"] = compute_next_run(draft, now) if enabled else None

        return values

    async def delete(self, task_id: str) -> None:
        """Soft delete a task. Its execution history is retained.

        Raises:
            NotFoundError: if the task does not exist
        """
        async with get_session(self._session_factory) as session:
            deleted = await ScheduledTaskRepository(session).soft_delete(task_id)
        if not deleted:
            raise NotFoundError("Task not found")
        logger.info(f"Deleted task {task_id}")

    async def status_counts(self) -> dict[str, Any]:
        """Task counts, last-24h execution counts, running executions and the next fire."""
        now = utcnow()
        async with self._session_factory() as session:
            tasks_repo = ScheduledTaskRepository(session)
            executions_repo = ExecutionRepository(session)
            counts = await tasks_repo.count()
            today = await executions_repo.stats(since=now - timedelta(hours=24))
            running = await executions_repo.list_running()
            running_tasks = await tasks_repo.get_many([e.task_id for e in running])
            next_task = await tasks_repo.get_next()

        next_run = None
        if next_task is not None:
            task = ScheduledTask.from_model(next_task)
            scheduled_for = task.next_run_at or now
            next_run = {
                "taskId": task.task_id,
                "taskName": task.name,
                "taskType": task.task_type.value,
                "scheduledFor": isoformat(scheduled_for),
                "inMinutes": max(0, round((scheduled_for - now).total_seconds() / 60)),
            }

        return {
            "tasks": counts,
            "today": {
                "total": today["total"],
                "completed": today[ExecutionStatus.COMPLETED.value],
                "failed": today[ExecutionStatus.FAILED.value],
                "running": today[ExecutionStatus.RUNNING.value],
                "pending": today[ExecutionStatus.PENDING.value],
                "tokensSaved": today["totalTokensSaved"],
                "projectsProcessed": today["totalProjectsProcessed"],
            },
            "running": [_running_entry(e, running_tasks.get(e.task_id)) for e in running],
            "next": next_run,
        }

    async def upcoming(self, hours: int) -> dict[str, Any]:
        """Enabled tasks firing within ``hours``, grouped into time windows.

        Raises:
            ValidationError: unless 1 <= hours <= 168
        """
        if hours < 1 or hours > 168:
            raise ValidationError("hours must be between 1 and 168")

        now = utcnow()
        until = now + timedelta(hours=hours)
        async with self._session_factory() as session:
            models = await ScheduledTaskRepository(session).list_upcoming(until)
            recent = await ExecutionRepository(session).list_for_tasks(
                [m.task_id for m in models], 1
            )
            machines = await MachineRepository(session).get_many(
                [m.machine_id for m in models if m.machine_id]
            )

        windows: dict[str, list[dict[str, Any]]] = {
            "nextHour": [],
            "next6Hours": [],
            "next24Hours": [],
            "later": [],
        }
        upcoming = []
        for model in models:
            task = ScheduledTask.from_model(model)
            next_run_at = task.next_run_at or now
            minutes = max(0, round((next_run_at - now).total_seconds() / 60))
            last = recent.get(task.task_id) or []
            entry = {
                "id": task.task_id,
                "name": task.name,
                "description": task.description,
                "taskType": task.task_type.value,
                **{
                    k: v
                    for k, v in schedule_fields(task).items()
                    if k in ("scheduleType", "cronExpression", "intervalHours")
                },
                "nextRunAt": isoformat(next_run_at),
                "minutesUntilRun": minutes,
                "hoursUntilRun": round(minutes / 60, 1),
                "machine": machine_ref(machines.get(task.machine_id or "")),
                "lastExecution": (
                    execution_to_dict(TaskExecution.from_model(last[0])) if last else None
                ),
            }
            upcoming.append(entry)
            if minutes <= 60:
                windows["nextHour"].append(entry)
            elif minutes <= 360:
                windows["next6Hours"].append(entry)
            elif minutes <= 1440:
                windows["next24Hours"].append(entry)
            else:
                windows["later"].append(entry)

        return {
            "upcoming": upcoming,
            "windows": windows,
            "summary": {"total": len(upcoming), **{k: len(v) for k, v in windows.items()}},
            "queryPeriod": {
                "hours": hours,
                "from": isoformat(now),
                "to": isoformat(until),
            },
        }
