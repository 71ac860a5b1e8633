"""
Error taxonomy for the workflow engine. Every error carries a stable `code`
that the HTTP layer and metrics labels use.
"""


class WorkflowError(Exception):
    code = "workflow_error"

    def __init__(self, message: str = "", order_id: str | None = None):
        self.order_id = order_id
        super().__init__(message or self.code)

    @property
    def message(self) -> str:
        return str(self)


class OrderNotFound(WorkflowError):
    code = "order_not_found"


class InvalidState(WorkflowError):
    """Order is Completed or Cancelled and accepts no further transitions."""
    code = "invalid_state"


class Forbidden(WorkflowError):
    code = "forbidden"


class NoOpTransition(WorkflowError):
    """Same-stage request with neither a ship-date revision nor a note."""
    code = "noop_transition"


class InvalidTransition(WorkflowError):
    """Backward move without the correction flag (or an unknown stage)."""
    code = "invalid_transition"

    def __init__(self, message: str = "", order_id: str | None = None, current_stage: str | None = None):
        self.current_stage = current_stage
        super().__init__(message, order_id)


class InvalidRequest(WorkflowError):
    code = "invalid_request"


class Conflict(WorkflowError):
    """Concurrent modification persisted after all retries."""
    code = "conflict"


class DeliveryFailed(WorkflowError):
    """Notification delivery exhausted its retries. Never reaches the transition caller."""
    code = "delivery_failed"

    def __init__(self, message: str = "", order_id: str | None = None, channel: str | None = None, retryable: bool = True):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message, order_id)


class ConflictError(Exception):
    """Raised by a store when the order version changed since it was read. Transaction rolls back."""

    def __init__(self, order_id: str, expected_version: int):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(f"order {order_id} changed since version {expected_version}")
