"""Webhook configuration endpoints."""

from typing import Annotated, Any

from fastapi import APIRouter, Query, status

from cadence.dependencies import DispatcherDep, WebhookServiceDep
from cadence.models.api import WebhookCreate, WebhookUpdate

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.get("")
async def list_webhooks(
    webhooks: WebhookServiceDep,
    machine_id: Annotated[str | None, Query(alias="machineId")] = None,
    webhook_type: Annotated[str | None, Query(alias="webhookType")] = None,
    enabled: bool | None = None,
) -> dict[str, Any]:
    return {
        "webhooks": await webhooks.list_webhooks(
            machine_id=machine_id, webhook_type=webhook_type, enabled=enabled
        )
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_webhook(body: WebhookCreate, webhooks: WebhookServiceDep) -> dict[str, Any]:
    return {"webhook": await webhooks.create(body)}


@router.get("/{webhook_id}")
async def get_webhook(webhook_id: str, webhooks: WebhookServiceDep) -> dict[str, Any]:
    return {"webhook": await webhooks.get(webhook_id)}


@router.patch("/{webhook_id}")
async def update_webhook(
    webhook_id: str, body: WebhookUpdate, webhooks: WebhookServiceDep
) -> dict[str, Any]:
    return {"webhook": await webhooks.update(webhook_id, body)}


@router.delete("/{webhook_id}")
async def delete_webhook(webhook_id: str, webhooks: WebhookServiceDep) -> dict[str, Any]:
    await webhooks.delete(webhook_id)
    return {"success": True, "message": "Webhook deleted successfully"}


@router.post("/{webhook_id}/test")
async def test_webhook(webhook_id: str, dispatcher: DispatcherDep) -> dict[str, Any]:
    """Send a test notification. Delivery errors are reported in the body."""
    result = await dispatcher.test(webhook_id)
    return result.to_dict()
