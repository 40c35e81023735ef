"""Execution history queries."""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cadence.db.models import ExecutionStatus, TriggerType
from cadence.db.repositories.executions import ExecutionRepository
from cadence.db.repositories.machines import MachineRepository
from cadence.db.repositories.scheduled import ScheduledTaskRepository
from cadence.errors import NotFoundError, ValidationError
from cadence.models.execution import TaskExecution
from cadence.models.scheduled_task import ScheduledTask
from cadence.services.serializers import execution_to_dict, machine_ref, task_summary

MAX_PAGE_SIZE = 100


def parse_status(value: str | None) -> ExecutionStatus | None:
    if value is None:
        return None
    try:
        return ExecutionStatus(value)
    except ValueError:
        choices = ", ".join(s.value for s in ExecutionStatus)
        raise ValidationError(f"status must be one of: {choices}") from None


def parse_trigger_filter(value: str | None) -> TriggerType | None:
    if value is None:
        return None
    try:
        return TriggerType(value)
    except ValueError:
        choices = ", ".join(t.value for t in TriggerType)
        raise ValidationError(f"triggerType must be one of: {choices}") from None


class ExecutionHistory:
    """Read side of the execution audit trail."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_executions(
        self,
        task_id: str | None = None,
        status: str | None = None,
        machine_id: str | None = None,
        trigger_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Page through executions, newest first, with stats over all matches.

        Raises:
            ValidationError: on an unknown status or trigger type filter
        """
        filters = {
            "task_id": task_id,
            "status": parse_status(status),
            "machine_id": machine_id,
            "trigger_type": parse_trigger_filter(trigger_type),
        }
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)

        async with self._session_factory() as session:
            repo = ExecutionRepository(session)
            models, total = await repo.list_filtered(limit=limit, offset=offset, **filters)
            stats = await repo.stats(**filters)
            tasks = await ScheduledTaskRepository(session).get_many(
                list({m.task_id for m in models})
            )
            machines = await MachineRepository(session).get_many(
                list({t.machine_id for t in tasks.values() if t.machine_id})
            )

        executions = []
        for model in models:
            body = execution_to_dict(TaskExecution.from_model(model))
            task_model = tasks.get(model.task_id)
            body["task"] = (
                task_summary(
                    ScheduledTask.from_model(task_model),
                    machines.get(task_model.machine_id or ""),
                )
                if task_model
                else None
            )
            executions.append(body)

        return {
            "executions": executions,
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "hasMore": offset + len(executions) < total,
            },
            "stats": stats,
        }

    async def get(self, execution_id: str) -> dict[str, Any]:
        """Execution detail with its task, including the task config.

        Raises:
            NotFoundError: if the execution does not exist
        """
        async with self._session_factory() as session:
            model = await ExecutionRepository(session).get(execution_id)
            if model is None:
                raise NotFoundError("Execution not found")
            task_model = await ScheduledTaskRepository(session).get(
                model.task_id, include_deleted=True
            )
            machine = None
            if task_model is not None and task_model.machine_id:
                machine = await MachineRepository(session).get(task_model.machine_id)

        body = execution_to_dict(TaskExecution.from_model(model))
        body["task"] = None
        if task_model is not None:
            task = ScheduledTask.from_model(task_model)
            body["task"] = {
                **task_summary(task),
                "taskConfig": task.task_config,
                "machine": machine_ref(machine),
            }
        return body
