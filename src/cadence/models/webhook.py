"""Webhook configuration domain model."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from cadence.clock import as_utc
from cadence.db.models import WebhookConfigModel, WebhookType

MASK = "********"


def mask_webhook_url(url: str) -> str:
    """Hide all but the last 8 characters of a webhook URL."""
    if len(url) <= 20:
        return MASK
    return MASK + url[-8:]


@dataclass
class WebhookConfig:
    webhook_id: str
    name: str
    webhook_type: WebhookType
    webhook_url: str
    description: str | None = None
    config: dict[str, Any] = field(default_factory=dict)
    event_types: list[str] = field(default_factory=list)
    machine_id: str | None = None
    enabled: bool = True
    last_used_at: datetime | None = None
    failure_count: int = 0
    created_at: datetime | None = None

    @property
    def masked_url(self) -> str:
        return mask_webhook_url(self.webhook_url)

    def subscribes_to(self, event: str, machine_id: str | None) -> bool:
        """Whether this webhook should receive ``event`` for a task on ``machine_id``."""
        if not self.enabled or event not in self.event_types:
            return False
        return self.machine_id is None or self.machine_id == machine_id

    @classmethod
    def from_model(cls, model: WebhookConfigModel) -> "WebhookConfig":
        return cls(
            webhook_id=model.webhook_id,
            name=model.name,
            description=model.description,
            webhook_type=WebhookType(model.webhook_type),
            webhook_url=model.webhook_url,
            config=model.config or {},
            event_types=list(model.event_types or []),
            machine_id=model.machine_id,
            enabled=model.enabled,
            last_used_at=as_utc(model.last_used_at),
            failure_count=model.failure_count,
            created_at=as_utc(model.created_at),
        )
