"""Tests for the ExecutionEngine lifecycle."""

import asyncio
from unittest.mock import patch

import pytest

from cadence.db.models import ExecutionStatus, TaskType, TriggerType
from cadence.db.repositories.executions import ExecutionRepository
from cadence.db.repositories.scheduled import ScheduledTaskRepository
from cadence.db.repositories.webhooks import WebhookRepository
from cadence.errors import ConflictError, NotFoundError, ValidationError
from cadence.models.execution import TaskExecution
from cadence.services.engine import ExecutionEngine
from cadence.services.handlers import MetricSource


async def load(session_factory, execution_id) -> TaskExecution:
    async with session_factory() as session:
        model = await ExecutionRepository(session).get(execution_id)
    return TaskExecution.from_model(model)


def build_engine(session_factory, handlers, dispatcher, **options) -> ExecutionEngine:
    return ExecutionEngine(
        session_factory,
        handlers=handlers,
        dispatcher=dispatcher,
        metric_source=MetricSource(session_factory),
        **options,
    )


class TestClaim:
    """Tests for claiming executions."""

    async def test_claim_returns_pending(self, engine, make_task):
        task_id = await make_task()
        execution = await engine.claim(task_id)

        assert execution.status is ExecutionStatus.PENDING
        assert execution.trigger_type is TriggerType.MANUAL
        assert execution.task_id == task_id

    async def test_claim_records_last_run(self, engine, make_task, session_factory):
        task_id = await make_task(schedule_type="interval", interval_hours=6)
        execution = await engine.claim(task_id, "scheduled")

        async with session_factory() as session:
            task = await ScheduledTaskRepository(session).get(task_id)
        assert task.last_run_at is not None
        assert task.next_run_at is not None
        assert execution.trigger_type is TriggerType.SCHEDULED

    async def test_claim_unknown_task(self, engine):
        with pytest.raises(NotFoundError) as exc_info:
            await engine.claim("missing")
        assert exc_info.value.message == "Task not found"

    async def test_claim_disabled_task(self, engine, make_task):
        task_id = await make_task(enabled=False)
        with pytest.raises(ConflictError) as exc_info:
            await engine.claim(task_id)
        assert exc_info.value.message == "Task is disabled"

    async def test_claim_invalid_trigger_type(self, engine, make_task):
        task_id = await make_task()
        with pytest.raises(ValidationError) as exc_info:
            await engine.claim(task_id, "cosmic_ray")
        assert exc_info.value.message.startswith("triggerType must be one of:")

    async def test_single_flight(self, engine, make_task):
        """A second claim while the first is non-terminal is a conflict."""
        task_id = await make_task()
        await engine.claim(task_id)

        with pytest.raises(ConflictError) as exc_info:
            await engine.claim(task_id, "scheduled")
        assert exc_info.value.message == "Task already has an execution in progress"

    async def test_concurrent_claims_admit_one(self, engine, make_task):
        task_id = await make_task()

        results = await asyncio.gather(
            *(engine.claim(task_id) for _ in range(5)), return_exceptions=True
        )

        claimed = [r for r in results if isinstance(r, TaskExecution)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(claimed) == 1
        assert len(conflicts) == 4


class TestRun:
    """Tests for running claimed executions."""

    async def test_completed(self, engine, make_task, session_factory):
        task_id = await make_task(
            task_config={"projectsProcessed": 4, "issuesFound": 1, "tokensSaved": 2500}
        )
        execution = await engine.trigger(task_id)
        await engine.drain()

        done = await load(session_factory, execution.execution_id)
        assert done.status is ExecutionStatus.COMPLETED
        assert done.projects_processed == 4
        assert done.issues_found == 1
        assert done.tokens_saved == 2500
        assert done.completed_at is not None
        assert done.duration_ms is not None and done.duration_ms >= 0
        assert done.error is None
        assert done.result["tokensSaved"] == 2500

    async def test_task_idle_again_after_completion(self, engine, make_task):
        task_id = await make_task()
        await engine.trigger(task_id)
        await engine.drain()

        second = await engine.trigger(task_id)
        await engine.drain()
        assert second.execution_id

    async def test_body_error_marks_failed(self, engine, handlers, make_task, session_factory):
        async def broken(context):
            raise RuntimeError("analysis backend unavailable")

        handlers.register(TaskType.GENERATE_RECOMMENDATIONS, broken)
        task_id = await make_task(task_type="generate_recommendations")
        execution = await engine.trigger(task_id)
        await engine.drain()

        done = await load(session_factory, execution.execution_id)
        assert done.status is ExecutionStatus.FAILED
        assert done.error == "analysis backend unavailable"
        assert done.error_kind == "error"
        assert done.completed_at is not None

    async def test_missing_handler_marks_failed(self, engine, make_task, session_factory):
        task_id = await make_task(task_type="generate_recommendations")
        execution = await engine.trigger(task_id)
        await engine.drain()

        done = await load(session_factory, execution.execution_id)
        assert done.status is ExecutionStatus.FAILED
        assert done.error == "No handler registered for task type 'generate_recommendations'"

    async def test_timeout_marks_failed_with_timeout_kind(
        self, session_factory, handlers, dispatcher, make_task
    ):
        async def hangs(context):
            await asyncio.sleep(30)

        handlers.register(TaskType.GENERATE_RECOMMENDATIONS, hangs)
        engine = build_engine(session_factory, handlers, dispatcher, execution_timeout=0.2)
        task_id = await make_task(task_type="generate_recommendations")
        execution = await engine.trigger(task_id)
        await engine.drain()

        done = await load(session_factory, execution.execution_id)
        assert done.status is ExecutionStatus.FAILED
        assert done.error_kind == "timeout"
        assert done.error == "Task execution timed out after 0.2s"

    async def test_timeout_when_body_ignores_cancellation(
        self, session_factory, handlers, dispatcher, make_task
    ):
        """A body that swallows cancellation still times out and frees the task."""
        finished = asyncio.Event()

        async def stubborn(context):
            while not finished.is_set():
                try:
                    await asyncio.sleep(0.05)
                except asyncio.CancelledError:
                    continue
            return {"tokensSaved": 1}

        handlers.register(TaskType.GENERATE_RECOMMENDATIONS, stubborn)
        engine = build_engine(session_factory, handlers, dispatcher, execution_timeout=0.2)
        task_id = await make_task(task_type="generate_recommendations")
        execution = await engine.trigger(task_id)
        await asyncio.wait_for(engine.drain(), timeout=2)

        done = await load(session_factory, execution.execution_id)
        assert done.status is ExecutionStatus.FAILED
        assert done.error_kind == "timeout"

        second = await engine.claim(task_id)
        assert second.status is ExecutionStatus.PENDING

        finished.set()
        await asyncio.sleep(0.1)
        after = await load(session_factory, execution.execution_id)
        assert after.status is ExecutionStatus.FAILED
        assert after.tokens_saved == 0

    async def test_health_check_reads_machine_metrics(
        self, engine, make_task, make_machine, session_factory
    ):
        machine_id = await make_machine(metrics={"health_score": 40, "issue_count": 3})
        task_id = await make_task(
            task_type="health_check",
            machine_id=machine_id,
            task_config={"alertThreshold": 50, "includeRecommendations": True},
        )
        execution = await engine.trigger(task_id)
        await engine.drain()

        done = await load(session_factory, execution.execution_id)
        assert done.status is ExecutionStatus.COMPLETED
        assert done.issues_found == 3
        details = done.result["details"]
        assert details["healthScore"] == 40
        assert details["alert"] is True
        assert details["recommendations"][0] == "ALERT: Health score 40 is below threshold 50"


class TestCancel:
    """Tests for cancelling executions."""

    async def test_cancel_running(self, engine, gate, make_task, session_factory):
        task_id = await make_task(task_type="analyze_context")
        execution = await engine.trigger(task_id)
        await asyncio.wait_for(gate.entered.wait(), timeout=5)

        cancelled = await engine.cancel(execution.execution_id)
        await engine.drain()

        assert cancelled.status is ExecutionStatus.CANCELLED
        done = await load(session_factory, execution.execution_id)
        assert done.status is ExecutionStatus.CANCELLED
        assert done.error_kind == "cancelled"
        assert done.error == "Execution cancelled"

    async def test_cancel_terminal_is_conflict(self, engine, make_task):
        task_id = await make_task()
        execution = await engine.trigger(task_id)
        await engine.drain()

        with pytest.raises(ConflictError):
            await engine.cancel(execution.execution_id)

    async def test_cancel_unknown(self, engine):
        with pytest.raises(NotFoundError):
            await engine.cancel("missing")

    async def test_stop_cancels_inflight(self, engine, gate, make_task, session_factory):
        task_id = await make_task(task_type="analyze_context")
        execution = await engine.trigger(task_id)
        await asyncio.wait_for(gate.entered.wait(), timeout=5)

        await engine.stop()

        done = await load(session_factory, execution.execution_id)
        assert done.status is ExecutionStatus.CANCELLED
        assert done.error == "Execution cancelled: scheduler shutting down"

    async def test_stop_lets_inflight_finish_within_grace(
        self, session_factory, handlers, dispatcher, gate, make_task
    ):
        engine = build_engine(session_factory, handlers, dispatcher, shutdown_grace=5)
        task_id = await make_task(task_type="analyze_context")
        execution = await engine.trigger(task_id)
        await asyncio.wait_for(gate.entered.wait(), timeout=5)

        asyncio.get_running_loop().call_later(0.1, gate.release.set)
        await engine.stop()

        done = await load(session_factory, execution.execution_id)
        assert done.status is ExecutionStatus.COMPLETED
        assert done.tokens_saved == 500

    async def test_no_claims_while_stopping(self, engine, make_task):
        task_id = await make_task()
        await engine.stop()

        with pytest.raises(ConflictError, match="shutting down"):
            await engine.claim(task_id)


class TestBookkeepingErrors:
    """Database errors around the body never leave a task stuck."""

    async def test_result_write_error_fails_execution(
        self, engine, make_task, session_factory
    ):
        finalize = ExecutionRepository.finalize
        statuses = []

        async def flaky_finalize(self, execution_id, **values):
            statuses.append(values["status"])
            if len(statuses) == 1:
                raise RuntimeError("database is locked")
            return await finalize(self, execution_id, **values)

        task_id = await make_task()
        with patch.object(ExecutionRepository, "finalize", flaky_finalize):
            execution = await engine.trigger(task_id)
            await engine.drain()

        assert statuses == [ExecutionStatus.COMPLETED, ExecutionStatus.FAILED]
        done = await load(session_factory, execution.execution_id)
        assert done.status is ExecutionStatus.FAILED
        assert done.error == "Could not record result: database is locked"

        second = await engine.claim(task_id)
        assert second.status is ExecutionStatus.PENDING

    async def test_start_error_fails_execution(self, engine, make_task, session_factory):
        async def broken_mark_running(self, execution_id):
            raise RuntimeError("connection reset")

        task_id = await make_task()
        with patch.object(ExecutionRepository, "mark_running", broken_mark_running):
            execution = await engine.trigger(task_id)
            await engine.drain()

        done = await load(session_factory, execution.execution_id)
        assert done.status is ExecutionStatus.FAILED
        assert done.error == "Could not start execution: connection reset"


class TestRetry:
    """Tests for retrying executions."""

    async def test_retry_failed(self, engine, make_task):
        task_id = await make_task(task_type="generate_recommendations")
        failed = await engine.trigger(task_id)
        await engine.drain()

        original, retried = await engine.retry(failed.execution_id)
        await engine.drain()

        assert original.execution_id == failed.execution_id
        assert retried.execution_id != failed.execution_id
        assert retried.trigger_type is TriggerType.MANUAL

    async def test_retry_completed_rejected(self, engine, make_task):
        task_id = await make_task()
        execution = await engine.trigger(task_id)
        await engine.drain()

        with pytest.raises(ValidationError) as exc_info:
            await engine.retry(execution.execution_id)
        assert exc_info.value.message == "Can only retry failed executions"


class TestNotifications:
    """Tests for terminal notifications sent by the engine."""

    async def test_completed_notifies_subscribers(
        self, engine, make_task, make_webhook, recorder, session_factory
    ):
        webhook_id = await make_webhook()
        task_id = await make_task(task_config={"tokensSaved": 100})
        execution = await engine.trigger(task_id)
        await engine.drain()

        bodies = recorder.bodies()
        assert [b["event"] for b in bodies] == ["task_completed"]
        assert bodies[0]["task"]["id"] == task_id
        assert bodies[0]["detailsUrl"] == "https://cadence.example.com/scheduler"

        done = await load(session_factory, execution.execution_id)
        assert done.notifications_sent == [webhook_id]

    async def test_notify_on_success_disabled(
        self, engine, make_task, make_webhook, recorder, session_factory
    ):
        await make_webhook()
        task_id = await make_task(notify_on_success=False)
        execution = await engine.trigger(task_id)
        await engine.drain()

        assert recorder.requests == []
        done = await load(session_factory, execution.execution_id)
        assert done.notifications_sent == []

    async def test_webhook_failure_never_fails_execution(
        self, engine, make_task, make_webhook, recorder, session_factory
    ):
        """A 500 from the webhook only bumps its failure counter."""
        recorder.status_code = 500
        webhook_id = await make_webhook()
        task_id = await make_task()
        execution = await engine.trigger(task_id)
        await engine.drain()

        done = await load(session_factory, execution.execution_id)
        assert done.status is ExecutionStatus.COMPLETED
        async with session_factory() as session:
            webhook = await WebhookRepository(session).get(webhook_id)
        assert webhook.failure_count == 1

    async def test_failed_notifies_task_failed(
        self, engine, make_task, make_webhook, recorder
    ):
        await make_webhook(event_types=["task_failed"])
        task_id = await make_task(task_type="generate_recommendations")
        await engine.trigger(task_id)
        await engine.drain()

        bodies = recorder.bodies()
        assert [b["event"] for b in bodies] == ["task_failed"]
        assert "No handler registered" in bodies[0]["error"]

    async def test_started_event(self, engine, make_task, make_webhook, recorder):
        await make_webhook(event_types=["task_started"])
        task_id = await make_task()
        await engine.trigger(task_id)
        await engine.drain()

        assert [b["event"] for b in recorder.bodies()] == ["task_started"]
