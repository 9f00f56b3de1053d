from typing import Any, Optional


class WorkflowError(Exception):
    """Base class for user-correctable workflow errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidTransition(WorkflowError):
    """Raised when an action is not legal from the current status."""

    def __init__(self, current: Any, attempted: str, message: Optional[str] = None):
        self.current = current
        self.attempted = attempted
        current_value = getattr(current, "value", current)
        super().__init__(message or f"Cannot {attempted} when status is: {current_value}")


class ValidationError(WorkflowError):
    pass


class NotFound(WorkflowError):
    pass


class ConflictError(WorkflowError):
    pass


class Forbidden(WorkflowError):
    pass
