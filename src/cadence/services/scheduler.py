"""Scheduler service: the poll loop that fires due tasks."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cadence.clock import utcnow
from cadence.db.models import TriggerType
from cadence.db.repositories.scheduled import ScheduledTaskRepository
from cadence.errors import CadenceError, ConflictError
from cadence.models.execution import TaskExecution
from cadence.models.schedule import ThresholdSchedule
from cadence.models.scheduled_task import ScheduledTask
from cadence.services.engine import ExecutionEngine
from cadence.services.handlers import MetricSource
from cadence.services.triggers import is_due
from cadence.services.webhooks import threshold_triggered_event

logger = logging.getLogger(__name__)


class SchedulerService:
    """Polls enabled tasks and hands due ones to the execution engine.

    Keeps no state between cycles. Several instances may poll the same
    database; the engine's claim decides which of them runs a task.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: ExecutionEngine,
        metric_source: MetricSource,
        check_interval: float = 60,
        max_concurrent: int = 3,
        threshold_cooldown: timedelta = timedelta(0),
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._metric_source = metric_source
        self._check_interval = check_interval
        self._max_concurrent = max_concurrent
        self._threshold_cooldown = threshold_cooldown
        self._running = False
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._scheduler_loop())
        logger.info(
            f"Scheduler service started (every {self._check_interval:g}s, "
            f"max {self._max_concurrent} per cycle)"
        )

    async def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        logger.info("Scheduler service stopped")

    async def _scheduler_loop(self) -> None:
        """Main scheduler loop - checks for due tasks."""
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.exception(f"Scheduler error: {e}")
            await asyncio.sleep(self._check_interval)

    async def poll_once(self, now: datetime | None = None) -> list[TaskExecution]:
        """Run one poll cycle.

        Args:
            now: Evaluation time, defaults to the current time

        Returns:
            Executions started during this cycle
        """
        now = now or utcnow()
        async with self._session_factory() as session:
            models = await ScheduledTaskRepository(session).list_pollable()
        tasks = [ScheduledTask.from_model(m) for m in models]

        snapshots: dict[str | None, dict[str, float]] = {}
        due: list[ScheduledTask] = []
        for task in tasks:
            try:
                metrics = None
                if isinstance(task.schedule, ThresholdSchedule):
                    if task.machine_id not in snapshots:
                        snapshots[task.machine_id] = await self._metric_source.snapshot(
                            task.machine_id
                        )
                    metrics = snapshots[task.machine_id]
                if is_due(task, now, metrics, self._threshold_cooldown):
                    due.append(task)
            except (CadenceError, ValueError) as e:
                logger.warning(f"Could not evaluate task {task.task_id}: {e}")
            except Exception as e:
                logger.exception(f"Error evaluating task {task.task_id}: {e}")

        started: list[TaskExecution] = []
        for task in due:
            if len(started) >= self._max_concurrent:
                logger.info(
                    f"Reached {self._max_concurrent} executions this cycle, "
                    f"{len(due) - len(started)} due tasks deferred"
                )
                break
            execution = await self._fire(task, snapshots.get(task.machine_id))
            if execution is not None:
                started.append(execution)

        if due:
            logger.info(f"Poll found {len(due)} due tasks, started {len(started)}")
        return started

    async def _fire(
        self, task: ScheduledTask, metrics: dict[str, float] | None
    ) -> TaskExecution | None:
        schedule = task.schedule
        threshold = isinstance(schedule, ThresholdSchedule)
        trigger = TriggerType.THRESHOLD if threshold else TriggerType.SCHEDULED
        try:
            execution = await self._engine.trigger(task.task_id, trigger)
        except ConflictError as e:
            logger.info(f"Skipping task {task.task_id}: {e.message}")
            return None
        except CadenceError as e:
            logger.warning(f"Could not start task {task.task_id}: {e.message}")
            return None
        except Exception as e:
            logger.exception(f"Error starting task {task.task_id}: {e}")
            return None

        if isinstance(schedule, ThresholdSchedule) and metrics is not None:
            self._engine.notify(
                threshold_triggered_event(
                    task,
                    metric=schedule.metric.value,
                    current_value=metrics[schedule.metric.value],
                    threshold=schedule.value,
                    op=schedule.op.value,
                ),
                task.machine_id,
            )
        return execution

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "checkIntervalMs": int(self._check_interval * 1000),
            "maxConcurrentTasks": self._max_concurrent,
        }
