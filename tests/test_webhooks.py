"""Tests for webhook formatting and delivery."""

from datetime import datetime, timezone

import httpx
import pytest

from cadence.db.models import TaskType, WebhookEventType, WebhookType
from cadence.db.repositories.webhooks import WebhookRepository
from cadence.errors import NotFoundError
from cadence.models.schedule import ManualSchedule
from cadence.models.scheduled_task import ScheduledTask
from cadence.models.webhook import WebhookConfig, mask_webhook_url
from cadence.services.webhooks import (
    DiscordFormatter,
    GenericFormatter,
    N8nFormatter,
    SlackFormatter,
    format_duration,
    get_formatter,
    health_alert_event,
    task_completed_event,
    task_failed_event,
    threshold_triggered_event,
)

TASK = ScheduledTask(
    task_id="task-1",
    name="Nightly Analysis",
    task_type=TaskType.ANALYZE_CONTEXT,
    schedule=ManualSchedule(),
)

WEBHOOK = WebhookConfig(
    webhook_id="hook-1",
    name="Ops",
    webhook_type=WebhookType.N8N,
    webhook_url="https://n8n.example.com/webhook/abc123",
)


def completed():
    return task_completed_event(
        TASK, "exec-1", 65000, projects_processed=3, issues_found=2, tokens_saved=12500
    )


async def failure_count(session_factory, webhook_id) -> int:
    async with session_factory() as session:
        model = await WebhookRepository(session).get(webhook_id)
    return model.failure_count


class TestEventBuilders:
    def test_completed_message(self):
        event = completed()
        assert event.event is WebhookEventType.TASK_COMPLETED
        assert event.message == (
            'Task "Nightly Analysis" completed successfully • 3 projects processed • '
            "12,500 tokens saved"
        )
        assert event.execution == {"id": "exec-1", "status": "completed", "duration": 65000}

    def test_failed(self):
        event = task_failed_event(TASK, "exec-1", "boom", 1500)
        assert event.error == "boom"
        assert event.message == 'Task "Nightly Analysis" failed: boom'

    def test_threshold(self):
        event = threshold_triggered_event(TASK, "health_score", 42, 50, "lt")
        assert event.message == "Threshold triggered: health_score is below 50 (current: 42)"
        assert event.metrics == {"health_score": 42}

    def test_health_alert(self):
        event = health_alert_event(TASK, 35, 50, 7)
        assert event.message == "Health score 35 is below threshold 50 (7 active issues)"

    @pytest.mark.parametrize(
        "ms,text", [(250, "250ms"), (1500, "1.5s"), (65000, "1m 5s")]
    )
    def test_format_duration(self, ms, text):
        assert format_duration(ms) == text


class TestFormatters:
    def test_registry_covers_every_type(self):
        for webhook_type in WebhookType:
            assert get_formatter(webhook_type) is not None
        assert isinstance(get_formatter("slack"), SlackFormatter)

    def test_slack_blocks(self):
        body = SlackFormatter().format(completed())
        assert body["text"].startswith("✅ Task Completed")
        assert body["blocks"][0]["type"] == "header"
        fields = [f["text"] for f in body["blocks"][2]["fields"]]
        assert "*Task:*\nNightly Analysis" in fields
        assert "*Duration:*\n1m 5s" in fields
        assert "*Tokens Saved:*\n12,500" in fields

    def test_discord_embed(self):
        body = DiscordFormatter().format(task_failed_event(TASK, "exec-1", "x" * 2000))
        embed = body["embeds"][0]
        assert embed["color"] == 15548997
        error_field = embed["fields"][-1]
        assert error_field["name"] == "Error"
        assert len(error_field["value"]) == 1006

    def test_n8n_envelope(self):
        body = N8nFormatter().format(completed())
        assert body["event"] == "task_completed"
        assert body["source"] == "cadence-scheduler"
        assert body["task"] == {
            "id": "task-1",
            "name": "Nightly Analysis",
            "type": "analyze_context",
        }
        assert body["execution"]["durationMs"] == 65000
        assert body["metrics"]["tokensSaved"] == 12500

    def test_generic_is_common_model(self):
        event = completed()
        assert GenericFormatter().format(event) == event.to_dict()

    def test_test_payloads(self):
        now = datetime(2025, 3, 10, tzinfo=timezone.utc)
        assert N8nFormatter().test_payload(WEBHOOK, now)["event"] == "test_notification"
        assert GenericFormatter().test_payload(WEBHOOK, now)["test"] is True
        assert "embeds" in DiscordFormatter().test_payload(WEBHOOK, now)
        assert "blocks" in SlackFormatter().test_payload(WEBHOOK, now)


class TestMasking:
    def test_long_url_keeps_last_eight(self):
        url = "https://hooks.slack.com/services/T000/B000/abcdefgh"
        assert mask_webhook_url(url) == "********abcdefgh"

    def test_short_url_fully_masked(self):
        assert mask_webhook_url("http://x.io/hook") == "********"


class TestWebhookDispatcher:
    """Tests for WebhookDispatcher delivery bookkeeping."""

    async def test_success_resets_failures(
        self, dispatcher, make_webhook, recorder, session_factory
    ):
        webhook_id = await make_webhook(webhook_type="slack")
        async with session_factory() as session:
            await WebhookRepository(session).record_failure(webhook_id)
            await session.commit()

        result = await dispatcher.test(webhook_id)

        assert result.success is True
        assert result.status == 200
        assert result.to_dict()["message"] == "Test notification sent successfully"
        assert await failure_count(session_factory, webhook_id) == 0
        request = recorder.requests[0]
        assert request.headers["user-agent"] == "Cadence-Scheduler/1.0"
        assert "blocks" in recorder.bodies()[0]

    async def test_unreachable_counts_one_failure(
        self, dispatcher, make_webhook, recorder, session_factory
    ):
        """Test-fire against an unreachable URL reports the error and counts once."""
        recorder.error = httpx.ConnectError("Connection refused")
        webhook_id = await make_webhook()

        result = await dispatcher.test(webhook_id)

        assert result.success is False
        assert result.error == "Connection refused"
        assert result.to_dict() == {"success": False, "error": "Connection refused"}
        assert await failure_count(session_factory, webhook_id) == 1

    async def test_non_2xx_is_failure(self, dispatcher, make_webhook, recorder, session_factory):
        recorder.status_code = 404
        webhook_id = await make_webhook()

        result = await dispatcher.test(webhook_id)

        assert result.success is False
        assert result.status == 404
        assert result.error == "Webhook returned 404: ok"
        assert await failure_count(session_factory, webhook_id) == 1

    async def test_timeout_message(self, dispatcher, make_webhook, recorder):
        recorder.error = httpx.ReadTimeout("timed out")
        webhook_id = await make_webhook()

        result = await dispatcher.test(webhook_id)

        assert result.error == "Webhook timed out after 2s"

    async def test_unknown_webhook(self, dispatcher):
        with pytest.raises(NotFoundError):
            await dispatcher.test("missing")

    async def test_details_url_added_without_touching_event(
        self, dispatcher, make_webhook, recorder
    ):
        await make_webhook(name="Ops")
        await make_webhook(name="Audit")
        event = completed()

        results = await dispatcher.broadcast(event, None)

        assert [r.success for r in results] == [True, True]
        assert [b["detailsUrl"] for b in recorder.bodies()] == [
            "https://cadence.example.com/scheduler"
        ] * 2
        assert event.details_url is None

    async def test_broadcast_isolates_failures(
        self, session_factory, make_webhook, make_machine
    ):
        from cadence.services.webhooks import WebhookDispatcher

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "down.example.com":
                return httpx.Response(503, text="unavailable")
            return httpx.Response(204)

        dispatcher = WebhookDispatcher(session_factory, transport=httpx.MockTransport(handler))
        machine_id = await make_machine()
        down = await make_webhook(
            name="Down", webhook_url="https://down.example.com/hooks/aaaaaaaa"
        )
        up = await make_webhook(name="Up", webhook_url="https://up.example.com/hooks/bbbbbbbb")
        await make_webhook(
            name="Other machine",
            webhook_url="https://up.example.com/hooks/cccccccc",
            machine_id=await make_machine("build-02"),
        )
        await make_webhook(
            name="Unsubscribed",
            webhook_url="https://up.example.com/hooks/dddddddd",
            event_types=["task_failed"],
        )

        results = await dispatcher.broadcast(completed(), machine_id)

        outcome = {r.webhook_id: r.success for r in results}
        assert outcome == {down: False, up: True}
        assert await failure_count(session_factory, down) == 1
        assert await failure_count(session_factory, up) == 0
