"""Error taxonomy for the scheduler.

Input and existence errors are raised synchronously to API callers and
mapped to HTTP responses by the app. Execution and delivery failures are
recorded in durable state instead of being propagated.
"""


class CadenceError(Exception):
    """Base exception for scheduler errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(CadenceError):
    """Raised when input is malformed or missing required fields."""

    status_code = 400


class NotFoundError(CadenceError):
    """Raised when a task, execution, webhook or machine does not exist."""

    status_code = 404


class ConflictError(CadenceError):
    """Raised on overlapping executions or duplicate unique keys."""

    status_code = 409


class ExecutionFailure(CadenceError):
    """A task body raised. Recorded on the execution, never returned over HTTP."""

    kind = "error"


class ExecutionTimeout(ExecutionFailure):
    """A task body exceeded the execution ceiling."""

    kind = "timeout"

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Task execution timed out after {timeout:g}s")


class DeliveryFailure(CadenceError):
    """A webhook could not be delivered. Only counted on the webhook."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)
