"""Execution history endpoints."""

from typing import Annotated, Any

from fastapi import APIRouter, Query, status

from cadence.dependencies import EngineDep, HistoryDep
from cadence.services.serializers import execution_to_dict

router = APIRouter(prefix="/executions", tags=["executions"])


@router.get("")
async def list_executions(
    history: HistoryDep,
    task_id: Annotated[str | None, Query(alias="taskId")] = None,
    execution_status: Annotated[str | None, Query(alias="status")] = None,
    machine_id: Annotated[str | None, Query(alias="machineId")] = None,
    trigger_type: Annotated[str | None, Query(alias="triggerType")] = None,
    limit: int = 50,
    offset: int = 0,
) -> dict[str, Any]:
    return await history.list_executions(
        task_id=task_id,
        status=execution_status,
        machine_id=machine_id,
        trigger_type=trigger_type,
        limit=limit,
        offset=offset,
    )


@router.get("/{execution_id}")
async def get_execution(execution_id: str, history: HistoryDep) -> dict[str, Any]:
    return {"execution": await history.get(execution_id)}


@router.post("/{execution_id}/retry", status_code=status.HTTP_202_ACCEPTED)
async def retry_execution(execution_id: str, engine: EngineDep) -> dict[str, Any]:
    original, execution = await engine.retry(execution_id)
    return {
        "executionId": execution.execution_id,
        "originalExecutionId": original.execution_id,
        "taskId": execution.task_id,
        "status": "running",
        "message": "Retry execution started",
        "triggerType": execution.trigger_type.value,
    }


@router.post("/{execution_id}/cancel")
async def cancel_execution(execution_id: str, engine: EngineDep) -> dict[str, Any]:
    execution = await engine.cancel(execution_id)
    return {
        "execution": execution_to_dict(execution),
        "message": "Execution cancelled",
    }
