"""Webhook notification delivery.

Each webhook type has a formatter that turns the common ``WebhookEvent`` into
that provider's body (Slack blocks, Discord embed, n8n envelope or plain
JSON). The dispatcher POSTs the body and records the outcome on the webhook:
a failure bumps ``failure_count``, a success resets it. Nothing here retries,
and nothing here touches execution records.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cadence.clock import utcnow
from cadence.db.models import WebhookEventType, WebhookType
from cadence.db.repositories.webhooks import WebhookRepository
from cadence.errors import DeliveryFailure, NotFoundError
from cadence.models.webhook import WebhookConfig

logger = logging.getLogger(__name__)

SOURCE = "cadence-scheduler"
TEST_EVENT = "test_notification"

EVENT_EMOJI = {
    WebhookEventType.TASK_STARTED: "🚀",
    WebhookEventType.TASK_COMPLETED: "✅",
    WebhookEventType.TASK_FAILED: "❌",
    WebhookEventType.THRESHOLD_TRIGGERED: "⚠️",
    WebhookEventType.OPTIMIZATION_APPLIED: "✨",
    WebhookEventType.HEALTH_ALERT: "🔔",
}

EVENT_TITLES = {
    WebhookEventType.TASK_STARTED: "Task Started",
    WebhookEventType.TASK_COMPLETED: "Task Completed",
    WebhookEventType.TASK_FAILED: "Task Failed",
    WebhookEventType.THRESHOLD_TRIGGERED: "Threshold Alert",
    WebhookEventType.OPTIMIZATION_APPLIED: "Optimization Applied",
    WebhookEventType.HEALTH_ALERT: "Health Alert",
}

# Discord embed colors (decimal)
DISCORD_COLORS = {
    WebhookEventType.TASK_STARTED: 3447003,  # Blue
    WebhookEventType.TASK_COMPLETED: 5763719,  # Green
    WebhookEventType.TASK_FAILED: 15548997,  # Red
    WebhookEventType.THRESHOLD_TRIGGERED: 16776960,  # Yellow
    WebhookEventType.OPTIMIZATION_APPLIED: 10181046,  # Purple
    WebhookEventType.HEALTH_ALERT: 16744448,  # Orange
}

OPERATOR_WORDS = {
    "lt": "below",
    "lte": "at or below",
    "gt": "above",
    "gte": "at or above",
}


def format_duration(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    return f"{ms // 60000}m {(ms % 60000) // 1000}s"


@dataclass
class WebhookEvent:
    """Provider-neutral notification, rendered by a formatter per webhook type."""

    event: WebhookEventType
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    task: dict[str, Any] | None = None
    execution: dict[str, Any] | None = None
    metrics: dict[str, Any] | None = None
    error: str | None = None
    details_url: str | None = None

    @property
    def title(self) -> str:
        return EVENT_TITLES.get(self.event, "Notification")

    @property
    def emoji(self) -> str:
        return EVENT_EMOJI.get(self.event, "📋")

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "event": self.event.value,
            "timestamp": self.timestamp.isoformat(),
            "source": SOURCE,
            "message": self.message,
        }
        if self.task is not None:
            body["task"] = self.task
        if self.execution is not None:
            body["execution"] = self.execution
        if self.metrics is not None:
            body["metrics"] = self.metrics
        if self.error is not None:
            body["error"] = self.error
        if self.details_url:
            body["detailsUrl"] = self.details_url
        return body


class PayloadFormatter(Protocol):
    def format(self, event: WebhookEvent) -> dict[str, Any]: ...

    def test_payload(self, webhook: WebhookConfig, timestamp: datetime) -> dict[str, Any]: ...


class SlackFormatter:
    """Slack block kit message."""

    def format(self, event: WebhookEvent) -> dict[str, Any]:
        heading = f"{event.emoji} {event.title}"
        blocks: list[dict[str, Any]] = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": heading, "emoji": True},
            }
        ]
        if event.message:
            blocks.append(
                {"type": "section", "text": {"type": "mrkdwn", "text": event.message}}
            )

        fields = [
            {"type": "mrkdwn", "text": f"*{label}:*\n{value}"}
            for label, value in _summary_fields(event)
        ]
        if fields:
            blocks.append({"type": "section", "fields": fields})

        if event.error:
            blocks.append(
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"*Error:*\n```{event.error}```"},
                }
            )

        context = []
        if event.details_url:
            context.append(
                {"type": "mrkdwn", "text": f"<{event.details_url}|View Details>"}
            )
        context.append(
            {
                "type": "mrkdwn",
                "text": f"Sent by Cadence at {event.timestamp:%Y-%m-%d %H:%M:%S} UTC",
            }
        )
        blocks.append({"type": "context", "elements": context})

        return {"blocks": blocks, "text": f"{heading}: {event.message}"}

    def test_payload(self, webhook: WebhookConfig, timestamp: datetime) -> dict[str, Any]:
        return {
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": "🧪 Cadence Test Notification"},
                },
                {
                    "type": "section",
                    "fields": [
                        {"type": "mrkdwn", "text": f"*Webhook:*\n{webhook.name}"},
                        {"type": "mrkdwn", "text": "*Status:*\nTest successful"},
                        {"type": "mrkdwn", "text": f"*Time:*\n{timestamp.isoformat()}"},
                        {"type": "mrkdwn", "text": "*Source:*\nCadence Scheduler"},
                    ],
                },
                {
                    "type": "context",
                    "elements": [
                        {
                            "type": "mrkdwn",
                            "text": "This is a test notification from Cadence Scheduler",
                        }
                    ],
                },
            ],
            "text": "🧪 Cadence Test Notification",
        }


class DiscordFormatter:
    """Discord embed with a per-event color."""

    def format(self, event: WebhookEvent) -> dict[str, Any]:
        embed: dict[str, Any] = {
            "title": f"{event.emoji} {event.title}",
            "color": DISCORD_COLORS.get(event.event, 3447003),
            "timestamp": event.timestamp.isoformat(),
        }
        if event.message:
            embed["description"] = event.message

        fields = [
            {"name": label, "value": str(value), "inline": True}
            for label, value in _summary_fields(event)
        ]
        if event.error:
            # Discord caps field values at 1024 characters
            fields.append({"name": "Error", "value": f"```{event.error[:1000]}```"})
        if fields:
            embed["fields"] = fields

        footer = []
        if event.metrics and event.metrics.get("issuesFound") is not None:
            footer.append(f"{event.metrics['issuesFound']} issues found")
        if event.details_url:
            footer.append("Cadence Scheduler")
        if footer:
            embed["footer"] = {"text": " | ".join(footer)}

        return {"embeds": [embed]}

    def test_payload(self, webhook: WebhookConfig, timestamp: datetime) -> dict[str, Any]:
        return {
            "embeds": [
                {
                    "title": "🧪 Cadence Test Notification",
                    "description": "This is a test notification from Cadence Scheduler",
                    "color": DISCORD_COLORS[WebhookEventType.TASK_COMPLETED],
                    "fields": [
                        {"name": "Webhook", "value": webhook.name, "inline": True},
                        {"name": "Status", "value": "Test successful", "inline": True},
                    ],
                    "footer": {"text": "Cadence Scheduler"},
                    "timestamp": timestamp.isoformat(),
                }
            ]
        }


class N8nFormatter:
    """Flat event envelope for n8n webhook triggers."""

    def format(self, event: WebhookEvent) -> dict[str, Any]:
        body: dict[str, Any] = {
            "event": event.event.value,
            "timestamp": event.timestamp.isoformat(),
            "source": SOURCE,
            "message": event.message,
        }
        if event.task:
            body["task"] = {
                "id": event.task["id"],
                "name": event.task["name"],
                "type": event.task["taskType"],
            }
        if event.execution:
            body["execution"] = {
                "id": event.execution["id"],
                "status": event.execution["status"],
                "durationMs": event.execution.get("duration"),
            }
        if event.metrics:
            body["metrics"] = event.metrics
        if event.error:
            body["error"] = event.error
        return body

    def test_payload(self, webhook: WebhookConfig, timestamp: datetime) -> dict[str, Any]:
        return {
            "event": TEST_EVENT,
            "timestamp": timestamp.isoformat(),
            "webhook": {"id": webhook.webhook_id, "name": webhook.name},
            "message": "This is a test notification from Cadence Scheduler",
            "source": SOURCE,
            "test": True,
        }


class GenericFormatter:
    """The common event model as plain JSON."""

    def format(self, event: WebhookEvent) -> dict[str, Any]:
        return event.to_dict()

    def test_payload(self, webhook: WebhookConfig, timestamp: datetime) -> dict[str, Any]:
        return {
            "event": TEST_EVENT,
            "timestamp": timestamp.isoformat(),
            "webhook": {"name": webhook.name, "type": webhook.webhook_type.value},
            "message": "This is a test notification from Cadence Scheduler",
            "source": SOURCE,
            "test": True,
        }


FORMATTERS: dict[WebhookType, PayloadFormatter] = {
    WebhookType.SLACK: SlackFormatter(),
    WebhookType.DISCORD: DiscordFormatter(),
    WebhookType.N8N: N8nFormatter(),
    WebhookType.GENERIC: GenericFormatter(),
}


def get_formatter(webhook_type: WebhookType | str) -> PayloadFormatter:
    return FORMATTERS[WebhookType(webhook_type)]


def _summary_fields(event: WebhookEvent) -> list[tuple[str, Any]]:
    fields: list[tuple[str, Any]] = []
    if event.task:
        fields.append(("Task", event.task["name"]))
        fields.append(("Type", event.task["taskType"]))
    if event.execution:
        fields.append(("Status", event.execution["status"]))
        if event.execution.get("duration") is not None:
            fields.append(("Duration", format_duration(event.execution["duration"])))
    metrics = event.metrics or {}
    if metrics.get("projectsProcessed") is not None:
        fields.append(("Projects", f"{metrics['projectsProcessed']} processed"))
    if metrics.get("tokensSaved") is not None:
        fields.append(("Tokens Saved", f"{metrics['tokensSaved']:,}"))
    if metrics.get("issuesFound") is not None:
        fields.append(("Issues Found", metrics["issuesFound"]))
    return fields


def _task_ref(task: Any) -> dict[str, Any]:
    return {
        "id": task.task_id,
        "name": task.name,
        "taskType": getattr(task.task_type, "value", task.task_type),
    }


def task_started_event(task: Any, execution_id: str) -> WebhookEvent:
    return WebhookEvent(
        event=WebhookEventType.TASK_STARTED,
        message=f"Started executing task: {task.name}",
        task=_task_ref(task),
        execution={"id": execution_id, "status": "running"},
    )


def task_completed_event(
    task: Any,
    execution_id: str,
    duration_ms: int,
    projects_processed: int = 0,
    issues_found: int = 0,
    tokens_saved: int = 0,
) -> WebhookEvent:
    parts = [f'Task "{task.name}" completed successfully']
    if projects_processed:
        parts.append(f"{projects_processed} projects processed")
    if tokens_saved:
        parts.append(f"{tokens_saved:,} tokens saved")
    return WebhookEvent(
        event=WebhookEventType.TASK_COMPLETED,
        message=" • ".join(parts),
        task=_task_ref(task),
        execution={"id": execution_id, "status": "completed", "duration": duration_ms},
        metrics={
            "projectsProcessed": projects_processed,
            "issuesFound": issues_found,
            "tokensSaved": tokens_saved,
        },
    )


def task_failed_event(
    task: Any,
    execution_id: str,
    error: str,
    duration_ms: int | None = None,
) -> WebhookEvent:
    return WebhookEvent(
        event=WebhookEventType.TASK_FAILED,
        message=f'Task "{task.name}" failed: {error}',
        task=_task_ref(task),
        execution={"id": execution_id, "status": "failed", "duration": duration_ms},
        error=error,
    )


def threshold_triggered_event(
    task: Any,
    metric: str,
    current_value: float,
    threshold: float,
    op: str,
) -> WebhookEvent:
    words = OPERATOR_WORDS.get(op, op)
    return WebhookEvent(
        event=WebhookEventType.THRESHOLD_TRIGGERED,
        message=(
            f"Threshold triggered: {metric} is {words} {threshold:g} "
            f"(current: {current_value:g})"
        ),
        task=_task_ref(task),
        metrics={metric: current_value},
    )


def health_alert_event(
    task: Any,
    health_score: int,
    alert_threshold: float,
    issues_found: int,
) -> WebhookEvent:
    return WebhookEvent(
        event=WebhookEventType.HEALTH_ALERT,
        message=(
            f"Health score {health_score} is below threshold {alert_threshold:g} "
            f"({issues_found} active issues)"
        ),
        task=_task_ref(task),
        metrics={"healthScore": health_score, "issuesFound": issues_found},
    )


@dataclass
class DeliveryResult:
    webhook_id: str
    success: bool
    status: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": self.success}
        if self.status is not None:
            body["status"] = self.status
        if self.error is not None:
            body["error"] = self.error
        if self.success:
            body["message"] = "Test notification sent successfully"
        return body


class WebhookDispatcher:
    """Delivers notifications and keeps each webhook's failure counter."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout: float = 10.0,
        user_agent: str = "Cadence-Scheduler/1.0",
        base_url: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout
        self._user_agent = user_agent
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    async def subscribers(
        self, event: WebhookEventType, machine_id: str | None
    ) -> list[WebhookConfig]:
        """Enabled webhooks subscribed to ``event`` whose scope covers ``machine_id``."""
        async with self._session_factory() as session:
            repo = WebhookRepository(session)
            models = await repo.list_candidates(machine_id)
        webhooks = [WebhookConfig.from_model(m) for m in models]
        return [w for w in webhooks if w.subscribes_to(event.value, machine_id)]

    async def broadcast(
        self,
        event: WebhookEvent,
        machine_id: str | None,
        webhooks: list[WebhookConfig] | None = None,
    ) -> list[DeliveryResult]:
        """Send ``event`` to every subscriber concurrently.

        Args:
            event: The notification to send
            machine_id: Machine scope of the task that raised the event
            webhooks: Pre-resolved subscribers; looked up when omitted

        Returns:
            One DeliveryResult per webhook. A failing webhook never affects
            the others.
        """
        if webhooks is None:
            webhooks = await self.subscribers(event.event, machine_id)
        if not webhooks:
            return []
        return list(await asyncio.gather(*(self.notify(w, event) for w in webhooks)))

    async def notify(self, webhook: WebhookConfig, event: WebhookEvent) -> DeliveryResult:
        """Format ``event`` for ``webhook`` and deliver it."""
        if self._base_url and not event.details_url:
            event = replace(event, details_url=f"{self._base_url}/scheduler")
        body = get_formatter(webhook.webhook_type).format(event)
        return await self._deliver(webhook, body)

    async def test(self, webhook_id: str) -> DeliveryResult:
        """Send a test_notification to a webhook and report the raw outcome.

        Counts toward the webhook's failure counter like any delivery.

        Raises:
            NotFoundError: if the webhook does not exist
        """
        async with self._session_factory() as session:
            model = await WebhookRepository(session).get(webhook_id)
            if model is None:
                raise NotFoundError("Webhook not found")
            webhook = WebhookConfig.from_model(model)

        body = get_formatter(webhook.webhook_type).test_payload(webhook, utcnow())
        return await self._deliver(webhook, body)

    async def _post(self, url: str, body: dict[str, Any]) -> int:
        """POST ``body`` and return the status code.

        Raises:
            DeliveryFailure: on a non-2xx response or a transport error
        """
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    url,
                    json=body,
                    headers={"User-Agent": self._user_agent},
                )
        except httpx.TimeoutException:
            raise DeliveryFailure(
                f"Webhook timed out after {self._timeout:g}s"
            ) from None
        except httpx.HTTPError as e:
            raise DeliveryFailure(str(e) or type(e).__name__) from e

        if not response.is_success:
            raise DeliveryFailure(
                f"Webhook returned {response.status_code}: {response.text[:200]}",
                status=response.status_code,
            )
        return response.status_code

    async def _deliver(self, webhook: WebhookConfig, body: dict[str, Any]) -> DeliveryResult:
        try:
            status = await self._post(webhook.webhook_url, body)
        except DeliveryFailure as e:
            logger.warning(f"Webhook {webhook.webhook_id} delivery failed: {e.message}")
            await self._record(webhook.webhook_id, success=False)
            return DeliveryResult(
                webhook_id=webhook.webhook_id,
                success=False,
                status=e.status,
                error=e.message,
            )

        await self._record(webhook.webhook_id, success=True)
        return DeliveryResult(webhook_id=webhook.webhook_id, success=True, status=status)

    async def _record(self, webhook_id: str, success: bool) -> None:
        try:
            async with self._session_factory() as session:
                repo = WebhookRepository(session)
                if success:
                    await repo.record_success(webhook_id)
                else:
                    await repo.record_failure(webhook_id)
                await session.commit()
        except Exception as e:
            logger.exception(f"Failed to record delivery outcome for webhook {webhook_id}: {e}")
