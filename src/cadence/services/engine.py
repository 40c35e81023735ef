"""Execution engine: claims tasks, runs their bodies, records the outcome.

Lifecycle of one execution::

    claim -> pending -> running -> completed | failed | cancelled

``claim`` is the only place an execution row is created and the database
rejects a second non-terminal row per task, so single-flight holds across
processes. The terminal write is a single conditional UPDATE; whoever moves
the row out of pending/running first wins and later writers are ignored.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Coroutine
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cadence.clock import as_utc, utcnow
from cadence.db.engine import get_session
from cadence.db.models import ExecutionStatus, TaskType, TriggerType, WebhookEventType
from cadence.db.repositories.executions import ExecutionRepository
from cadence.db.repositories.scheduled import ScheduledTaskRepository
from cadence.errors import (
    ConflictError,
    ExecutionFailure,
    ExecutionTimeout,
    NotFoundError,
    ValidationError,
)
from cadence.models.execution import TaskExecution, TaskResult
from cadence.models.scheduled_task import ScheduledTask
from cadence.models.webhook import WebhookConfig
from cadence.services.handlers import MetricSource, TaskContext, TaskHandlerRegistry
from cadence.services.triggers import compute_next_run
from cadence.services.webhooks import (
    WebhookDispatcher,
    WebhookEvent,
    health_alert_event,
    task_completed_event,
    task_failed_event,
    task_started_event,
)

logger = logging.getLogger(__name__)


def parse_trigger_type(value: TriggerType | str | None) -> TriggerType:
    """Validate a trigger type, defaulting to manual.

    Raises:
        ValidationError: if the value is not a known trigger type
    """
    if value is None:
        return TriggerType.MANUAL
    try:
        return TriggerType(value)
    except ValueError:
        choices = ", ".join(t.value for t in TriggerType)
        raise ValidationError(f"triggerType must be one of: {choices}") from None


def _duration_ms(started_at: datetime, completed_at: datetime) -> int:
    return max(0, int((completed_at - started_at).total_seconds() * 1000))


class ExecutionEngine:
    """Owns the execution lifecycle of scheduled tasks."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handlers: TaskHandlerRegistry,
        dispatcher: WebhookDispatcher,
        metric_source: MetricSource,
        execution_timeout: float | None = 300,
        shutdown_grace: float = 30,
    ) -> None:
        self._session_factory = session_factory
        self._handlers = handlers
        self._dispatcher = dispatcher
        self._metric_source = metric_source
        self._timeout = execution_timeout or None
        self._shutdown_grace = shutdown_grace
        self._inflight: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        # Bodies that outlived their execution (timed out or cancelled)
        self._abandoned: set[asyncio.Task[Any]] = set()
        self._stopping = False

    @property
    def running_count(self) -> int:
        return len(self._inflight)

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._inflight

    async def claim(
        self,
        task_id: str,
        trigger_type: TriggerType | str | None = TriggerType.MANUAL,
    ) -> TaskExecution:
        """Create a pending execution for a task.

        Also records the claim time as the task's last run so the poll loop
        stops considering it due.

        Raises:
            ValidationError: if ``trigger_type`` is unknown
            NotFoundError: if the task does not exist
            ConflictError: if the task is disabled, already has a pending
                or running execution, or the engine is shutting down
        """
        trigger = parse_trigger_type(trigger_type)
        if self._stopping:
            raise ConflictError("Scheduler is shutting down")
        now = utcnow()
        try:
            async with get_session(self._session_factory) as session:
                tasks = ScheduledTaskRepository(session)
                model = await tasks.get(task_id)
                if model is None:
                    raise NotFoundError("Task not found")
                if not model.enabled:
                    raise ConflictError("Task is disabled")

                task = ScheduledTask.from_model(model)
                execution = await ExecutionRepository(session).claim(
                    task_id, trigger, started_at=now
                )
                await tasks.mark_run(
                    task_id,
                    last_run_at=now,
                    next_run_at=compute_next_run(
                        dataclasses.replace(task, last_run_at=now), now
                    ),
                )
        except IntegrityError:
            raise ConflictError(
                "Task already has an execution in progress"
            ) from None

        logger.info(
            f"Claimed task {task_id} as execution {execution.execution_id} ({trigger.value})"
        )
        return TaskExecution.from_model(execution)

    def start(self, execution: TaskExecution) -> asyncio.Task[None]:
        """Run a claimed execution in the background."""
        execution_id = execution.execution_id
        runner = asyncio.create_task(self.run(execution_id), name=f"execution-{execution_id}")
        self._inflight[execution_id] = runner
        runner.add_done_callback(lambda r: self._runner_done(execution_id, r))
        return runner

    def _runner_done(self, execution_id: str, runner: asyncio.Task[None]) -> None:
        self._inflight.pop(execution_id, None)
        if not runner.cancelled() and runner.exception() is not None:
            logger.error(f"Runner for execution {execution_id} crashed: {runner.exception()}")

    async def trigger(
        self,
        task_id: str,
        trigger_type: TriggerType | str | None = TriggerType.MANUAL,
    ) -> TaskExecution:
        """Claim a task and start running it without waiting for the result."""
        execution = await self.claim(task_id, trigger_type)
        self.start(execution)
        return execution

    async def run(self, execution_id: str) -> None:
        """Drive a pending execution to a terminal state.

        Task body errors and timeouts are recorded on the execution and
        never raised. Cancellation is recorded and re-raised.

        The body runs in its own task. When the timeout passes the execution
        is failed right away, whether or not the body honours cancellation.
        """
        try:
            async with get_session(self._session_factory) as session:
                model = await ExecutionRepository(session).mark_running(execution_id)
                if model is None:
                    logger.info(f"Execution {execution_id} is no longer pending, skipping")
                    return
                task_model = await ScheduledTaskRepository(session).get(
                    model.task_id, include_deleted=True
                )
        except Exception as e:
            logger.exception(f"Could not start execution {execution_id}: {e}")
            await self._record_aborted(execution_id, f"Could not start execution: {e}")
            return

        if task_model is None:
            logger.error(f"Execution {execution_id} references missing task {model.task_id}")
            await self._record_aborted(execution_id, "Task not found")
            return

        task = ScheduledTask.from_model(task_model)
        started_at = as_utc(model.started_at) or utcnow()
        logger.info(f"Execution {execution_id} of task {task.task_id} running")
        self.notify(task_started_event(task, execution_id), task.machine_id)

        body = asyncio.create_task(
            self._run_body(task, execution_id), name=f"body-{execution_id}"
        )
        try:
            done, _ = await asyncio.wait({body}, timeout=self._timeout)
        except asyncio.CancelledError:
            self._abandon(body)
            reason = (
                "Execution cancelled: scheduler shutting down"
                if self._stopping
                else "Execution cancelled"
            )
            await asyncio.shield(self._record_cancelled(execution_id, reason))
            raise

        outcome: TaskResult | None = None
        failure: ExecutionFailure | None = None
        if not done:
            self._abandon(body)
            failure = ExecutionTimeout(self._timeout or 0)
        else:
            try:
                outcome = body.result()
            except ExecutionFailure as e:
                failure = e
            except (Exception, asyncio.CancelledError) as e:
                failure = ExecutionFailure(str(e) or type(e).__name__)

        if failure is not None:
            await self._finish_failed(task, execution_id, started_at, failure)
        else:
            await self._finish_completed(task, execution_id, started_at, outcome or TaskResult())

    async def _run_body(self, task: ScheduledTask, execution_id: str) -> TaskResult:
        context = TaskContext(
            execution_id=execution_id,
            task_id=task.task_id,
            task_name=task.name,
            task_type=task.task_type,
            task_config=task.task_config,
            machine_id=task.machine_id,
            machines=await self._metric_source.machines(task.machine_id),
        )
        return await self._handlers.run(context)

    def _abandon(self, body: asyncio.Task[Any]) -> None:
        """Cancel a body without waiting for it to stop."""
        body.cancel()
        self._abandoned.add(body)
        body.add_done_callback(self._abandoned_done)

    def _abandoned_done(self, body: asyncio.Task[Any]) -> None:
        self._abandoned.discard(body)
        if not body.cancelled() and body.exception() is not None:
            logger.warning(f"Abandoned task body {body.get_name()} raised: {body.exception()}")

    async def _finish_completed(
        self,
        task: ScheduledTask,
        execution_id: str,
        started_at: datetime,
        outcome: TaskResult,
    ) -> None:
        completed_at = utcnow()
        duration_ms = _duration_ms(started_at, completed_at)

        events: list[WebhookEvent] = []
        if task.notify_on_success:
            events.append(
                task_completed_event(
                    task,
                    execution_id,
                    duration_ms,
                    projects_processed=outcome.projects_processed,
                    issues_found=outcome.issues_found,
                    tokens_saved=outcome.tokens_saved,
                )
            )
        if task.task_type is TaskType.HEALTH_CHECK and outcome.details.get("alert"):
            events.append(
                health_alert_event(
                    task,
                    health_score=outcome.details.get("healthScore", 0),
                    alert_threshold=outcome.details.get("alertThreshold") or 0,
                    issues_found=outcome.issues_found,
                )
            )
        deliveries = await self._resolve_subscribers(events, task.machine_id)

        recorded = await self._finalize(
            task,
            execution_id,
            started_at,
            status=ExecutionStatus.COMPLETED,
            completed_at=completed_at,
            result=outcome.to_dict(),
            projects_processed=outcome.projects_processed,
            issues_found=outcome.issues_found,
            tokens_saved=outcome.tokens_saved,
            notifications_sent=_webhook_ids(deliveries),
        )
        if recorded:
            logger.info(f"Execution {execution_id} completed in {duration_ms}ms")
            self._broadcast(deliveries, task.machine_id)

    async def _finish_failed(
        self,
        task: ScheduledTask,
        execution_id: str,
        started_at: datetime,
        failure: ExecutionFailure,
    ) -> None:
        completed_at = utcnow()
        duration_ms = _duration_ms(started_at, completed_at)

        events: list[WebhookEvent] = []
        if task.notify_on_failure:
            events.append(
                task_failed_event(task, execution_id, failure.message, duration_ms)
            )
        deliveries = await self._resolve_subscribers(events, task.machine_id)

        recorded = await self._finalize(
            task,
            execution_id,
            started_at,
            status=ExecutionStatus.FAILED,
            completed_at=completed_at,
            error=failure.message,
            error_kind=failure.kind,
            notifications_sent=_webhook_ids(deliveries),
        )
        if recorded:
            logger.warning(
                f"Execution {execution_id} failed ({failure.kind}): {failure.message}"
            )
            self._broadcast(deliveries, task.machine_id)

    async def _finalize(
        self,
        task: ScheduledTask,
        execution_id: str,
        started_at: datetime,
        status: ExecutionStatus,
        completed_at: datetime,
        **values: Any,
    ) -> bool:
        """Write the terminal state and refresh the task's schedule cache.

        Returns:
            False if the execution was already terminal (cancelled first) or
            the write failed
        """
        try:
            async with get_session(self._session_factory) as session:
                updated = await ExecutionRepository(session).finalize(
                    execution_id,
                    status=status,
                    completed_at=completed_at,
                    duration_ms=_duration_ms(started_at, completed_at),
                    **values,
                )
                if updated is None:
                    logger.info(
                        f"Execution {execution_id} already finished, "
                        f"discarding {status.value} result"
                    )
                    return False
                await ScheduledTaskRepository(session).mark_run(
                    task.task_id,
                    last_run_at=started_at,
                    next_run_at=compute_next_run(
                        dataclasses.replace(task, last_run_at=started_at), completed_at
                    ),
                )
        except Exception as e:
            logger.exception(
                f"Could not record {status.value} result of execution {execution_id}: {e}"
            )
            await self._record_aborted(execution_id, f"Could not record result: {e}")
            return False
        return True

    async def _record_terminal(
        self,
        execution_id: str,
        status: ExecutionStatus,
        reason: str,
        error_kind: str,
    ) -> None:
        """Move a still active execution to ``status``. No-op once terminal."""
        completed_at = utcnow()
        async with get_session(self._session_factory) as session:
            repo = ExecutionRepository(session)
            model = await repo.get(execution_id)
            if model is None:
                return
            started_at = as_utc(model.started_at) or completed_at
            updated = await repo.finalize(
                execution_id,
                status=status,
                completed_at=completed_at,
                duration_ms=_duration_ms(started_at, completed_at),
                error=reason,
                error_kind=error_kind,
            )
        if updated is not None:
            logger.info(f"Execution {execution_id} {status.value}: {reason}")

    async def _record_cancelled(self, execution_id: str, reason: str) -> None:
        await self._record_terminal(
            execution_id, ExecutionStatus.CANCELLED, reason, "cancelled"
        )

    async def _record_aborted(self, execution_id: str, reason: str) -> None:
        """Fail an execution whose own bookkeeping raised, so the task is freed."""
        try:
            await self._record_terminal(execution_id, ExecutionStatus.FAILED, reason, "error")
        except Exception as e:
            logger.exception(f"Could not record failure of execution {execution_id}: {e}")

    async def cancel(self, execution_id: str) -> TaskExecution:
        """Cancel a pending or running execution.

        The row is moved to cancelled first; the in-process body, if this
        instance runs it, then stops being awaited.

        Raises:
            NotFoundError: if the execution does not exist
            ConflictError: if the execution already finished
        """
        async with get_session(self._session_factory) as session:
            repo = ExecutionRepository(session)
            model = await repo.get(execution_id)
            if model is None:
                raise NotFoundError("Execution not found")
            status = ExecutionStatus(model.status)
            if status.is_terminal:
                raise ConflictError(f"Execution is already {status.value}")

            completed_at = utcnow()
            updated = await repo.finalize(
                execution_id,
                status=ExecutionStatus.CANCELLED,
                completed_at=completed_at,
                duration_ms=_duration_ms(as_utc(model.started_at) or completed_at, completed_at),
                error="Execution cancelled",
                error_kind="cancelled",
            )
            if updated is None:
                raise ConflictError("Execution is already finished")

        runner = self._inflight.get(execution_id)
        if runner is not None:
            runner.cancel()
        logger.info(f"Cancelled execution {execution_id}")
        return TaskExecution.from_model(updated)

    async def retry(self, execution_id: str) -> tuple[TaskExecution, TaskExecution]:
        """Start a new manual execution of a failed execution's task.

        Returns:
            Tuple of (original execution, new pending execution)

        Raises:
            NotFoundError: if the execution or its task does not exist
            ValidationError: if the execution did not fail
            ConflictError: if the task is disabled or busy
        """
        async with self._session_factory() as session:
            model = await ExecutionRepository(session).get(execution_id)
        if model is None:
            raise NotFoundError("Execution not found")
        original = TaskExecution.from_model(model)
        if original.status is not ExecutionStatus.FAILED:
            raise ValidationError("Can only retry failed executions")

        execution = await self.trigger(original.task_id, TriggerType.MANUAL)
        logger.info(f"Retrying execution {execution_id} as {execution.execution_id}")
        return original, execution

    def notify(self, event: WebhookEvent, machine_id: str | None) -> None:
        """Broadcast ``event`` in the background."""
        self._spawn(self._dispatcher.broadcast(event, machine_id))

    def _broadcast(
        self,
        deliveries: list[tuple[WebhookEvent, list[WebhookConfig]]],
        machine_id: str | None,
    ) -> None:
        for event, webhooks in deliveries:
            if webhooks:
                self._spawn(self._dispatcher.broadcast(event, machine_id, webhooks))

    async def _resolve_subscribers(
        self, events: list[WebhookEvent], machine_id: str | None
    ) -> list[tuple[WebhookEvent, list[WebhookConfig]]]:
        resolved = []
        for event in events:
            try:
                webhooks = await self._dispatcher.subscribers(event.event, machine_id)
            except Exception as e:
                logger.exception(f"Failed to resolve webhooks for {event.event.value}: {e}")
                webhooks = []
            resolved.append((event, webhooks))
        return resolved

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background notification failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for in-flight executions and notifications to settle."""
        while self._inflight or self._background:
            await asyncio.gather(
                *self._inflight.values(), *self._background, return_exceptions=True
            )

    async def stop(self) -> None:
        """Let in-flight executions finish within the shutdown grace.

        Executions still running after that are cancelled and recorded as
        cancelled. No new executions are claimed once stopping.
        """
        self._stopping = True
        if self._inflight:
            logger.info(
                f"Waiting up to {self._shutdown_grace:g}s for "
                f"{len(self._inflight)} in-flight executions"
            )
            await asyncio.wait(list(self._inflight.values()), timeout=self._shutdown_grace)
        inflight = {
            execution_id: runner
            for execution_id, runner in self._inflight.items()
            if not runner.done()
        }
        runners = list(inflight.values())
        for runner in runners:
            runner.cancel()
        await asyncio.gather(*runners, return_exceptions=True)
        # Runners cancelled before their body started never record it themselves
        for execution_id in inflight:
            await self._record_cancelled(
                execution_id, "Execution cancelled: scheduler shutting down"
            )
        await asyncio.gather(*self._background, return_exceptions=True)
        if runners:
            logger.info(f"Cancelled {len(runners)} in-flight executions on shutdown")


def _webhook_ids(deliveries: list[tuple[WebhookEvent, list[WebhookConfig]]]) -> list[str]:
    ids: list[str] = []
    for _, webhooks in deliveries:
        for webhook in webhooks:
            if webhook.webhook_id not in ids:
                ids.append(webhook.webhook_id)
    return ids
