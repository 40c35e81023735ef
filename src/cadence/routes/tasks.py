"""Scheduled task endpoints."""

from typing import Annotated, Any

from fastapi import APIRouter, Body, Query, status

from cadence.dependencies import EngineDep, TaskServiceDep
from cadence.models.api import ScheduledTaskCreate, ScheduledTaskUpdate, TaskRunRequest

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("")
async def list_tasks(
    tasks: TaskServiceDep,
    machine_id: Annotated[str | None, Query(alias="machineId")] = None,
    enabled: bool | None = None,
    task_type: Annotated[str | None, Query(alias="taskType")] = None,
) -> dict[str, Any]:
    return {
        "tasks": await tasks.list_tasks(
            machine_id=machine_id, enabled=enabled, task_type=task_type
        )
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_task(body: ScheduledTaskCreate, tasks: TaskServiceDep) -> dict[str, Any]:
    return {"task": await tasks.create(body)}


@router.get("/{task_id}")
async def get_task(task_id: str, tasks: TaskServiceDep) -> dict[str, Any]:
    return {"task": await tasks.get(task_id)}


@router.patch("/{task_id}")
async def update_task(
    task_id: str, body: ScheduledTaskUpdate, tasks: TaskServiceDep
) -> dict[str, Any]:
    return {"task": await tasks.update(task_id, body)}


@router.delete("/{task_id}")
async def delete_task(task_id: str, tasks: TaskServiceDep) -> dict[str, Any]:
    await tasks.delete(task_id)
    return {"success": True, "message": "Task deleted successfully"}


@router.post("/{task_id}/run", status_code=status.HTTP_202_ACCEPTED)
async def run_task(
    task_id: str,
    engine: EngineDep,
    tasks: TaskServiceDep,
    body: TaskRunRequest | None = Body(default=None),
) -> dict[str, Any]:
    """Start a task now. Returns before the task body finishes."""
    execution = await engine.trigger(task_id, body.trigger_type if body else None)
    task = await tasks.get_summary(task_id)
    return {
        "executionId": execution.execution_id,
        "taskId": task_id,
        "taskName": task["name"],
        "machineId": task["machineId"],
        "machineName": (task["machine"] or {}).get("name"),
        "status": "running",
        "message": "Task execution started",
        "triggerType": execution.trigger_type.value,
    }
