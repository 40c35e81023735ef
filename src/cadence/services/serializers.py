"""JSON shapes returned by the REST API (camelCase keys)."""

from typing import Any

from cadence.clock import isoformat
from cadence.db.models import MachineModel
from cadence.models.execution import TaskExecution
from cadence.models.schedule import CronSchedule, IntervalSchedule, ThresholdSchedule
from cadence.models.scheduled_task import ScheduledTask
from cadence.models.webhook import WebhookConfig
from cadence.services.triggers import describe_cron_expression


def machine_ref(machine: MachineModel | None) -> dict[str, Any] | None:
    if machine is None:
        return None
    return {"id": machine.machine_id, "name": machine.name}


def machine_to_dict(machine: MachineModel) -> dict[str, Any]:
    return {
        "id": machine.machine_id,
        "name": machine.name,
        "hostname": machine.hostname,
        "platform": machine.platform,
        "metrics": machine.metrics or {},
        "metricsUpdatedAt": isoformat(machine.metrics_updated_at),
        "createdAt": isoformat(machine.created_at),
    }


def schedule_fields(task: ScheduledTask) -> dict[str, Any]:
    schedule = task.schedule
    fields: dict[str, Any] = {
        "scheduleType": task.schedule_type.value,
        "cronExpression": None,
        "intervalHours": None,
        "thresholdMetric": None,
        "thresholdValue": None,
        "thresholdOp": None,
        "scheduleDescription": None,
    }
    if isinstance(schedule, CronSchedule):
        fields["cronExpression"] = schedule.cron_expression
        fields["scheduleDescription"] = describe_cron_expression(schedule.cron_expression)
    elif isinstance(schedule, IntervalSchedule):
        fields["intervalHours"] = schedule.interval_hours
        hours = schedule.interval_hours
        fields["scheduleDescription"] = "Every hour" if hours == 1 else f"Every {hours} hours"
    elif isinstance(schedule, ThresholdSchedule):
        fields["thresholdMetric"] = schedule.metric.value
        fields["thresholdValue"] = schedule.value
        fields["thresholdOp"] = schedule.op.value
        fields["scheduleDescription"] = (
            f"When {schedule.metric.value} {schedule.op.value} {schedule.value:g}"
        )
    else:
        fields["scheduleDescription"] = "Manual"
    return fields


def task_to_dict(
    task: ScheduledTask, machine: MachineModel | None = None
) -> dict[str, Any]:
    return {
        "id": task.task_id,
        "name": task.name,
        "description": task.description,
        "taskType": task.task_type.value,
        **schedule_fields(task),
        "taskConfig": task.task_config,
        "machineId": task.machine_id,
        "machine": machine_ref(machine),
        "enabled": task.enabled,
        "notifyOnSuccess": task.notify_on_success,
        "notifyOnFailure": task.notify_on_failure,
        "lastRunAt": isoformat(task.last_run_at),
        "nextRunAt": isoformat(task.next_run_at),
        "createdAt": isoformat(task.created_at),
        "updatedAt": isoformat(task.updated_at),
    }


def task_summary(task: ScheduledTask, machine: MachineModel | None = None) -> dict[str, Any]:
    return {
        "id": task.task_id,
        "name": task.name,
        "taskType": task.task_type.value,
        "machine": machine_ref(machine),
    }


def execution_to_dict(execution: TaskExecution) -> dict[str, Any]:
    return {
        "id": execution.execution_id,
        "taskId": execution.task_id,
        "status": execution.status.value,
        "triggerType": execution.trigger_type.value,
        "startedAt": isoformat(execution.started_at),
        "completedAt": isoformat(execution.completed_at),
        "durationMs": execution.duration_ms,
        "result": execution.result,
        "error": execution.error,
        "errorKind": execution.error_kind,
        "projectsProcessed": execution.projects_processed,
        "issuesFound": execution.issues_found,
        "tokensSaved": execution.tokens_saved,
        "notificationsSent": execution.notifications_sent,
    }


def webhook_to_dict(webhook: WebhookConfig) -> dict[str, Any]:
    """Webhook as returned by every read path. The raw URL never appears."""
    return {
        "id": webhook.webhook_id,
        "name": webhook.name,
        "description": webhook.description,
        "webhookType": webhook.webhook_type.value,
        "webhookUrl": webhook.masked_url,
        "config": webhook.config,
        "eventTypes": webhook.event_types,
        "machineId": webhook.machine_id,
        "enabled": webhook.enabled,
        "lastUsedAt": isoformat(webhook.last_used_at),
        "failureCount": webhook.failure_count,
        "createdAt": isoformat(webhook.created_at),
    }
