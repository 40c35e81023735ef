"""Task bodies invoked by the execution engine, keyed by task type."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cadence.db.models import MachineModel, TaskType
from cadence.db.repositories.machines import MachineRepository
from cadence.errors import ExecutionFailure
from cadence.models.execution import TaskResult

logger = logging.getLogger(__name__)


@dataclass
class MachineSnapshot:
    machine_id: str
    name: str
    metrics: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_model(cls, model: MachineModel) -> "MachineSnapshot":
        return cls(
            machine_id=model.machine_id,
            name=model.name,
            metrics={
                k: float(v)
                for k, v in (model.metrics or {}).items()
                if isinstance(v, (int, float)) and not isinstance(v, bool)
            },
        )


@dataclass
class TaskContext:
    """Everything a task body gets to see about the run."""

    execution_id: str
    task_id: str
    task_name: str
    task_type: TaskType
    task_config: dict[str, Any] = field(default_factory=dict)
    machine_id: str | None = None
    machines: list[MachineSnapshot] = field(default_factory=list)

    @property
    def metrics(self) -> dict[str, float]:
        return average_metrics(self.machines)


TaskHandler = Callable[[TaskContext], Awaitable[TaskResult | dict[str, Any] | None]]


def average_metrics(machines: list[MachineSnapshot]) -> dict[str, float]:
    """Average each metric over the machines that report it."""
    totals: dict[str, float] = {}
    counts: dict[str, int] = {}
    for machine in machines:
        for name, value in machine.metrics.items():
            totals[name] = totals.get(name, 0.0) + value
            counts[name] = counts.get(name, 0) + 1
    return {name: totals[name] / counts[name] for name in totals}


class MetricSource:
    """Reads metric snapshots reported by machines.

    A task scoped to a machine sees that machine's metrics. A global task
    sees the average over every registered machine.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def machines(self, machine_id: str | None) -> list[MachineSnapshot]:
        async with self._session_factory() as session:
            repo = MachineRepository(session)
            if machine_id is not None:
                model = await repo.get(machine_id)
                models = [model] if model else []
            else:
                models = await repo.list_all()
        return [MachineSnapshot.from_model(m) for m in models]

    async def snapshot(self, machine_id: str | None) -> dict[str, float]:
        return average_metrics(await self.machines(machine_id))


class TaskHandlerRegistry:
    """Maps task types to the async callables that implement them."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def register(
        self, task_type: TaskType | str, handler: TaskHandler | None = None
    ) -> Any:
        """Register ``handler`` for ``task_type``. Usable as a decorator."""
        key = TaskType(task_type).value

        def decorator(fn: TaskHandler) -> TaskHandler:
            self._handlers[key] = fn
            logger.info(f"Registered task handler for {key}")
            return fn

        if handler is not None:
            return decorator(handler)
        return decorator

    def get(self, task_type: TaskType | str) -> TaskHandler | None:
        return self._handlers.get(TaskType(task_type).value)

    def registered_types(self) -> list[str]:
        return sorted(self._handlers)

    async def run(self, context: TaskContext) -> TaskResult:
        """Invoke the handler for ``context.task_type``.

        Raises:
            ExecutionFailure: if no handler is registered for the type
        """
        handler = self.get(context.task_type)
        if handler is None:
            raise ExecutionFailure(
                f"No handler registered for task type '{TaskType(context.task_type).value}'"
            )
        return TaskResult.coerce(await handler(context))


async def health_check(context: TaskContext) -> TaskResult:
    """Summarize machine health scores and flag the task when below alertThreshold.

    Config:
        alertThreshold: alert when the overall score is below this
        includeRecommendations: add advice for the lowest scoring machines
    """
    config = context.task_config
    scored = [m for m in context.machines if "health_score" in m.metrics]

    health_score = (
        round(sum(m.metrics["health_score"] for m in scored) / len(scored))
        if scored
        else 0
    )
    issues = sum(int(m.metrics.get("issue_count", 0)) for m in context.machines)

    recommendations: list[str] = []
    if config.get("includeRecommendations"):
        for machine in sorted(scored, key=lambda m: m.metrics["health_score"])[:3]:
            score = round(machine.metrics["health_score"])
            if score < 70:
                recommendations.append(f"Optimize {machine.name}: score {score}")
        if scored and health_score < 50:
            recommendations.append(
                "Overall health is poor. Consider running weekly optimization across all machines."
            )

    alert_threshold = config.get("alertThreshold")
    alert = alert_threshold is not None and health_score < alert_threshold
    if alert:
        recommendations.insert(
            0, f"ALERT: Health score {health_score} is below threshold {alert_threshold}"
        )

    return TaskResult(
        projects_processed=len(scored),
        issues_found=issues,
        tokens_saved=0,
        details={
            "healthScore": health_score,
            "alert": alert,
            "alertThreshold": alert_threshold,
            "recommendations": recommendations,
            "machines": [
                {
                    "machineId": m.machine_id,
                    "name": m.name,
                    "score": m.metrics["health_score"],
                }
                for m in scored
            ],
        },
    )


async def custom(context: TaskContext) -> TaskResult:
    """Report the counters given in the task config.

    Deployments that need real work for a custom task register their own
    handler over this one.
    """
    config = context.task_config
    return TaskResult(
        projects_processed=int(config.get("projectsProcessed", 0)),
        issues_found=int(config.get("issuesFound", 0)),
        tokens_saved=int(config.get("tokensSaved", 0)),
        details={"config": config},
    )


def default_registry() -> TaskHandlerRegistry:
    registry = TaskHandlerRegistry()
    registry.register(TaskType.HEALTH_CHECK, health_check)
    registry.register(TaskType.CUSTOM, custom)
    return registry
