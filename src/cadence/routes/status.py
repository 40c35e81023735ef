"""Scheduler status, upcoming runs and liveness."""

from typing import Any

from fastapi import APIRouter

from cadence.dependencies import SchedulerDep, TaskServiceDep, WebhookServiceDep

router = APIRouter(tags=["status"])


@router.get("/status")
async def get_status(
    scheduler: SchedulerDep,
    tasks: TaskServiceDep,
    webhooks: WebhookServiceDep,
) -> dict[str, Any]:
    counts = await tasks.status_counts()
    return {
        "scheduler": scheduler.status(),
        "tasks": counts["tasks"],
        "webhooks": await webhooks.counts(),
        "today": counts["today"],
        "running": counts["running"],
        "next": counts["next"],
    }


@router.get("/upcoming")
async def get_upcoming(tasks: TaskServiceDep, hours: int = 24) -> dict[str, Any]:
    return await tasks.upcoming(hours)


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
