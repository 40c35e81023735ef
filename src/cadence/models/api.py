"""API request schemas for FastAPI endpoints.

Bodies use camelCase keys. Fields whose checks carry stable error messages
(schedule fields, enum values, URLs) are accepted loosely here and validated
by the services.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Scheduled task schemas
class ScheduledTaskCreate(CamelModel):
    name: str | None = None
    description: str | None = None
    task_type: str | None = None
    schedule_type: str | None = None
    cron_expression: str | None = None
    interval_hours: Any = None
    threshold_metric: str | None = None
    threshold_value: Any = None
    threshold_op: str | None = None
    task_config: dict[str, Any] | None = None
    machine_id: str | None = None
    enabled: bool = True
    notify_on_success: bool = True
    notify_on_failure: bool = True


class ScheduledTaskUpdate(CamelModel):
    name: str | None = None
    description: str | None = None
    task_type: str | None = None
    schedule_type: str | None = None
    cron_expression: str | None = None
    interval_hours: Any = None
    threshold_metric: str | None = None
    threshold_value: Any = None
    threshold_op: str | None = None
    task_config: dict[str, Any] | None = None
    machine_id: str | None = None
    enabled: bool | None = None
    notify_on_success: bool | None = None
    notify_on_failure: bool | None = None


class TaskRunRequest(CamelModel):
    trigger_type: str | None = None


# Webhook schemas
class WebhookCreate(CamelModel):
    name: str | None = None
    description: str | None = None
    webhook_type: str | None = None
    webhook_url: str | None = None
    event_types: Any = None
    config: dict[str, Any] | None = None
    machine_id: str | None = None
    enabled: bool = True


class WebhookUpdate(CamelModel):
    name: str | None = None
    description: str | None = None
    webhook_type: str | None = None
    webhook_url: str | None = None
    event_types: Any = None
    config: dict[str, Any] | None = None
    machine_id: str | None = None
    enabled: bool | None = None


# Machine schemas
class MachineCreate(CamelModel):
    name: str
    hostname: str | None = None
    platform: str | None = None
    metrics: dict[str, float] = {}


class MetricsReport(CamelModel):
    metrics: dict[str, float]
