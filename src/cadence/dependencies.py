"""FastAPI dependency injection providers for services."""

from typing import Annotated

from fastapi import Depends, Request

from cadence.services import (
    ExecutionEngine,
    ExecutionHistory,
    MachineService,
    SchedulerService,
    TaskService,
    WebhookDispatcher,
    WebhookService,
)


def get_task_service(request: Request) -> TaskService:
    return request.app.state.task_service


def get_engine(request: Request) -> ExecutionEngine:
    return request.app.state.engine


def get_scheduler(request: Request) -> SchedulerService:
    return request.app.state.scheduler


def get_history(request: Request) -> ExecutionHistory:
    return request.app.state.history


def get_webhook_service(request: Request) -> WebhookService:
    return request.app.state.webhook_service


def get_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.dispatcher


def get_machine_service(request: Request) -> MachineService:
    return request.app.state.machine_service


TaskServiceDep = Annotated[TaskService, Depends(get_task_service)]
EngineDep = Annotated[ExecutionEngine, Depends(get_engine)]
SchedulerDep = Annotated[SchedulerService, Depends(get_scheduler)]
HistoryDep = Annotated[ExecutionHistory, Depends(get_history)]
WebhookServiceDep = Annotated[WebhookService, Depends(get_webhook_service)]
DispatcherDep = Annotated[WebhookDispatcher, Depends(get_dispatcher)]
MachineServiceDep = Annotated[MachineService, Depends(get_machine_service)]
