"""Webhook configuration CRUD. Every read path returns masked URLs."""

import logging
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cadence.db.engine import get_session
from cadence.db.models import WebhookEventType, WebhookType
from cadence.db.repositories.machines import MachineRepository
from cadence.db.repositories.webhooks import WebhookRepository
from cadence.errors import NotFoundError, ValidationError
from cadence.models.api import WebhookCreate, WebhookUpdate
from cadence.models.webhook import WebhookConfig
from cadence.services.serializers import webhook_to_dict

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TYPES = [
    WebhookEventType.TASK_COMPLETED.value,
    WebhookEventType.TASK_FAILED.value,
]


def parse_webhook_type(value: str | None) -> WebhookType:
    try:
        return WebhookType(value)
    except ValueError:
        choices = ", ".join(t.value for t in WebhookType)
        raise ValidationError(f"webhookType must be one of: {choices}") from None


def validate_webhook_url(value: str | None) -> str:
    if not value:
        raise ValidationError("webhookUrl is required")
    try:
        url = httpx.URL(value.strip())
    except httpx.InvalidURL:
        raise ValidationError("webhookUrl must be a valid URL") from None
    if url.scheme not in ("http", "https") or not url.host:
        raise ValidationError("webhookUrl must be a valid URL")
    return value.strip()


def validate_event_types(value: Any) -> list[str]:
    if not isinstance(value, list):
        raise ValidationError("eventTypes must be an array")
    valid = [e.value for e in WebhookEventType]
    invalid = [str(e) for e in value if e not in valid]
    if invalid:
        raise ValidationError(
            f"Invalid event types: {', '.join(invalid)}. Valid types: {', '.join(valid)}"
        )
    # Keep order, drop duplicates
    return list(dict.fromkeys(value))


class WebhookService:
    """Creates, updates and lists webhook configs."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, data: WebhookCreate) -> dict[str, Any]:
        """Create a webhook config.

        Raises:
            ValidationError: on a missing name, bad type, URL or event types
            NotFoundError: if ``machineId`` names an unknown machine
        """
        if data.name is None or not data.name.strip():
            raise ValidationError("name is required")
        webhook_type = parse_webhook_type(data.webhook_type)
        webhook_url = validate_webhook_url(data.webhook_url)
        event_types = (
            DEFAULT_EVENT_TYPES
            if data.event_types is None
            else validate_event_types(data.event_types)
        )

        async with get_session(self._session_factory) as session:
            if data.machine_id is not None and not await MachineRepository(
                session
            ).exists(data.machine_id):
                raise NotFoundError("Machine not found")
            model = await WebhookRepository(session).create(
                name=data.name.strip(),
                webhook_type=webhook_type.value,
                webhook_url=webhook_url,
                event_types=event_types,
                description=data.description,
                config=data.config,
                machine_id=data.machine_id,
                enabled=data.enabled,
            )

        webhook = WebhookConfig.from_model(model)
        logger.info(f"Created {webhook_type.value} webhook {webhook.webhook_id} ({webhook.name})")
        return webhook_to_dict(webhook)

    async def list_webhooks(
        self,
        machine_id: str | None = None,
        webhook_type: str | None = None,
        enabled: bool | None = None,
    ) -> list[dict[str, Any]]:
        if webhook_type is not None:
            webhook_type = parse_webhook_type(webhook_type).value
        async with self._session_factory() as session:
            models = await WebhookRepository(session).list_all(
                machine_id=machine_id, webhook_type=webhook_type, enabled=enabled
            )
        return [webhook_to_dict(WebhookConfig.from_model(m)) for m in models]

    async def get(self, webhook_id: str) -> dict[str, Any]:
        async with self._session_factory() as session:
            model = await WebhookRepository(session).get(webhook_id)
        if model is None:
            raise NotFoundError("Webhook not found")
        return webhook_to_dict(WebhookConfig.from_model(model))

    async def update(self, webhook_id: str, data: WebhookUpdate) -> dict[str, Any]:
        """Apply a partial update. The failure counter cannot be edited.

        Raises:
            NotFoundError: if the webhook or a given ``machineId`` does not exist
            ValidationError: on a bad type, URL or event types
        """
        patch = data.model_dump(exclude_unset=True)
        values: dict[str, Any] = {}
        if "name" in patch:
            if patch["name"] is None or not patch["name"].strip():
                raise ValidationError("name is required")
            values["name"] = patch["name"].strip()
        if "description" in patch:
            values["description"] = patch["description"]
        if "webhook_type" in patch:
            values["webhook_type"] = parse_webhook_type(patch["webhook_type"]).value
        if "webhook_url" in patch:
            values["webhook_url"] = validate_webhook_url(patch["webhook_url"])
        if "event_types" in patch:
            values["event_types"] = validate_event_types(patch["event_types"])
        if "config" in patch:
            values["config"] = patch["config"] or {}
        if patch.get("enabled") is not None:
            values["enabled"] = patch["enabled"]

        async with get_session(self._session_factory) as session:
            repo = WebhookRepository(session)
            if await repo.get(webhook_id) is None:
                raise NotFoundError("Webhook not found")
            if "machine_id" in patch:
                machine_id = patch["machine_id"]
                if machine_id is not None and not await MachineRepository(
                    session
                ).exists(machine_id):
                    raise NotFoundError("Machine not found")
                values["machine_id"] = machine_id
            model = await repo.update(webhook_id, values)
            if model is None:
                raise NotFoundError("Webhook not found")

        logger.info(f"Updated webhook {webhook_id}: {', '.join(sorted(values)) or 'no changes'}")
        return webhook_to_dict(WebhookConfig.from_model(model))

    async def delete(self, webhook_id: str) -> None:
        async with get_session(self._session_factory) as session:
            deleted = await WebhookRepository(session).delete(webhook_id)
        if not deleted:
            raise NotFoundError("Webhook not found")
        logger.info(f"Deleted webhook {webhook_id}")

    async def counts(self) -> dict[str, int]:
        async with self._session_factory() as session:
            return await WebhookRepository(session).count()
