from .engine import ExecutionEngine
from .executions import ExecutionHistory
from .handlers import MetricSource, TaskHandlerRegistry, default_registry
from .machines import MachineService
from .scheduler import SchedulerService
from .tasks import TaskService
from .webhook_configs import WebhookService
from .webhooks import WebhookDispatcher

__all__ = [
    "ExecutionEngine",
    "ExecutionHistory",
    "MachineService",
    "MetricSource",
    "SchedulerService",
    "TaskHandlerRegistry",
    "TaskService",
    "WebhookDispatcher",
    "WebhookService",
    "default_registry",
]
