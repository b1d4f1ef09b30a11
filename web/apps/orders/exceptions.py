"""Error taxonomy for the orders app.

Every error carries a stable machine ``code`` (returned to clients as
``detail``) and a human readable ``message``. Views map the classes to
HTTP status codes; the domain never deals with HTTP.
"""


class OrderError(Exception):
    code = "ORDER_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def __str__(self) -> str:
        return self.message


class OrderValidationError(OrderError, ValueError):
    """Bad or missing input, or a request the order's state does not allow."""

    code = "VALIDATION_ERROR"


class InvalidTransitionError(OrderValidationError):
    code = "INVALID_TRANSITION"


class ReturnWindowExpiredError(OrderValidationError):
    code = "RETURN_WINDOW_EXPIRED"


class NotFoundError(OrderError):
    """A referenced order, product or address does not exist."""

    code = "NOT_FOUND"


class ForbiddenError(OrderError):
    code = "FORBIDDEN"


class UpstreamError(OrderError):
    """An external dependency (inventory, payment provider) failed."""

    code = "UPSTREAM_UNAVAILABLE"


class CircuitOpenError(UpstreamError):
    code = "CIRCUIT_OPEN"


class WebhookSignatureError(OrderError):
    code = "INVALID_SIGNATURE"


class IdempotencyConflictError(OrderError):
    """An ``Idempotency-Key`` was reused with a different payload."""

    code = "IDEMPOTENCY_CONFLICT"
