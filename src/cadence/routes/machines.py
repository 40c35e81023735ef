"""Machine registry endpoints."""

from typing import Any

from fastapi import APIRouter, status

from cadence.dependencies import MachineServiceDep
from cadence.models.api import MachineCreate, MetricsReport

router = APIRouter(prefix="/machines", tags=["machines"])


@router.get("")
async def list_machines(machines: MachineServiceDep) -> dict[str, Any]:
    return {"machines": await machines.list_machines()}


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_machine(body: MachineCreate, machines: MachineServiceDep) -> dict[str, Any]:
    return {"machine": await machines.register(body)}


@router.put("/{machine_id}/metrics")
async def report_metrics(
    machine_id: str, body: MetricsReport, machines: MachineServiceDep
) -> dict[str, Any]:
    return {"machine": await machines.report_metrics(machine_id, body.metrics)}
