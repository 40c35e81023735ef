from .executions import router as executions_router
from .machines import router as machines_router
from .status import router as status_router
from .tasks import router as tasks_router
from .webhooks import router as webhooks_router

__all__ = [
    "executions_router",
    "machines_router",
    "status_router",
    "tasks_router",
    "webhooks_router",
]
