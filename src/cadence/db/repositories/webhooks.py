"""Webhook config repository for database operations."""

from datetime import datetime, timezone
from typing import Any, cast

from sqlalchemy import CursorResult, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.db.models import WebhookConfigModel


class WebhookRepository:
    """Repository for webhook config database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        name: str,
        webhook_type: str,
        webhook_url: str,
        event_types: list[str],
        description: str | None = None,
        config: dict[str, Any] | None = None,
        machine_id: str | None = None,
        enabled: bool = True,
        webhook_id: str | None = None,
    ) -> WebhookConfigModel:
        """Create a new webhook config.

        Args:
            name: Display name
            webhook_type: slack, discord, n8n or generic
            webhook_url: Delivery URL
            event_types: Events this webhook subscribes to
            description: Optional description
            config: Type-specific options
            machine_id: Optional machine scope
            enabled: Whether deliveries are attempted
            webhook_id: Optional specific webhook ID

        Returns:
            The created WebhookConfigModel
        """
        model = WebhookConfigModel(
            name=name,
            description=description,
            webhook_type=webhook_type,
            webhook_url=webhook_url,
            config=config or {},
            event_types=list(event_types),
            machine_id=machine_id,
            enabled=enabled,
            failure_count=0,
        )
        if webhook_id:
            model.webhook_id = webhook_id

        self.session.add(model)
        await self.session.flush()
        return model

    async def get(self, webhook_id: str) -> WebhookConfigModel | None:
        result = await self.session.execute(
            select(WebhookConfigModel).where(WebhookConfigModel.webhook_id == webhook_id)
        )
        return result.scalar_one_or_none()

    async def list_all(
        self,
        machine_id: str | None = None,
        webhook_type: str | None = None,
        enabled: bool | None = None,
    ) -> list[WebhookConfigModel]:
        """Get webhooks, newest first, optionally filtered."""
        query = select(WebhookConfigModel)
        if machine_id is not None:
            query = query.where(WebhookConfigModel.machine_id == machine_id)
        if webhook_type is not None:
            query = query.where(WebhookConfigModel.webhook_type == webhook_type)
        if enabled is not None:
            query = query.where(WebhookConfigModel.enabled.is_(enabled))
        result = await self.session.execute(
            query.order_by(WebhookConfigModel.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_candidates(self, machine_id: str | None) -> list[WebhookConfigModel]:
        """Get enabled webhooks whose scope covers ``machine_id``.

        Event matching happens in Python since ``event_types`` is a JSON
        list on every backend.
        """
        scope = WebhookConfigModel.machine_id.is_(None)
        if machine_id is not None:
            scope = or_(scope, WebhookConfigModel.machine_id == machine_id)
        result = await self.session.execute(
            select(WebhookConfigModel)
            .where(WebhookConfigModel.enabled.is_(True))
            .where(scope)
            .order_by(WebhookConfigModel.created_at.asc())
        )
        return list(result.scalars().all())

    async def count(self) -> dict[str, int]:
        result = await self.session.execute(
            select(WebhookConfigModel.enabled, func.count()).group_by(
                WebhookConfigModel.enabled
            )
        )
        counts = {bool(enabled): n for enabled, n in result.all()}
        return {
            "total": counts.get(True, 0) + counts.get(False, 0),
            "enabled": counts.get(True, 0),
        }

    async def update(
        self,
        webhook_id: str,
        values: dict[str, Any],
    ) -> WebhookConfigModel | None:
        """Update a webhook config. ``failure_count`` is never accepted here.

        Args:
            webhook_id: The webhook to update
            values: Column values to write; None clears the column

        Returns:
            Updated WebhookConfigModel if found
        """
        values = {k: v for k, v in values.items() if k != "failure_count"}
        if not values:
            return await self.get(webhook_id)

        values["updated_at"] = datetime.now(timezone.utc)
        result = await self.session.execute(
            update(WebhookConfigModel)
            .where(WebhookConfigModel.webhook_id == webhook_id)
            .values(**values)
            .returning(WebhookConfigModel)
        )
        return result.scalar_one_or_none()

    async def delete(self, webhook_id: str) -> bool:
        result = await self.session.execute(
            delete(WebhookConfigModel).where(WebhookConfigModel.webhook_id == webhook_id)
        )
        return (cast(CursorResult[Any], result).rowcount or 0) > 0

    async def record_success(self, webhook_id: str) -> WebhookConfigModel | None:
        """Reset the failure counter and stamp last_used_at after a delivery."""
        result = await self.session.execute(
            update(WebhookConfigModel)
            .where(WebhookConfigModel.webhook_id == webhook_id)
            .values(failure_count=0, last_used_at=datetime.now(timezone.utc))
            .returning(WebhookConfigModel)
        )
        return result.scalar_one_or_none()

    async def record_failure(self, webhook_id: str) -> WebhookConfigModel | None:
        """Atomically increment the failure counter after a failed delivery."""
        result = await self.session.execute(
            update(WebhookConfigModel)
            .where(WebhookConfigModel.webhook_id == webhook_id)
            .values(failure_count=WebhookConfigModel.failure_count + 1)
            .returning(WebhookConfigModel)
        )
        return result.scalar_one_or_none()
