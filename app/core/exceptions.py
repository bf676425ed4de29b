"""
Automation-core exception hierarchy.

Services raise these types and nothing else for expected failures; the app
registers one handler per type (app.utils.errors.register_error_handlers) so
every blueprint returns the same status codes and error envelope.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ApprovalRequest", resource_id=42)
    raise ValidationError("approver_kind is invalid", details={"approver_kind": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested definition, request, trigger or destination does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable model name (e.g. "WorkflowDefinition").
        resource_id: The key that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is malformed or violates a business rule.

    Always raised before any state is mutated. Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level (or per-item, for bulk calls) breakdown.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a write collides with existing or concurrently changed state.

    Covers duplicate unique values (a second open approval request for the
    same entity, a second decision on one step) and lost optimistic-version
    races. The caller should re-fetch and retry. Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field (or version column) that collided.
        value: The conflicting value.
        message: Optional override for the default "already exists" text.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | int | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = message or f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class InvalidStateError(Exception):
    """Raised when an operation is not allowed in the record's current state.

    Examples: deciding on a terminal approval request, deciding a sequential
    step out of order, retrying a delivery that already succeeded.
    Maps to HTTP 409 with code ERR_INVALID_STATE.

    Args:
        message: Human-readable reason shown to the operator.
        current_state: The state that blocked the operation.
    """

    def __init__(self, message: str, current_state: str | None = None) -> None:
        self.current_state = current_state
        super().__init__(message)


class TransportError(Exception):
    """Raised by the webhook transport when a delivery attempt fails.

    Never escapes the delivery service: the attempt is recorded and retried
    with backoff until the destination's attempt limit is reached.

    Args:
        message: Short failure reason ("HTTP 503", "ConnectTimeout: ...").
        status_code: HTTP status when the endpoint answered, else None.
        response_body: Truncated response body when available.
        duration_ms: Wall time spent on the attempt.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
        duration_ms: int = 0,
    ) -> None:
        self.status_code = status_code
        self.response_body = response_body
        self.duration_ms = duration_ms
        super().__init__(message)
