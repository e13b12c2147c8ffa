"""PositionDesk exception hierarchy.

All custom exceptions inherit from PositionDeskError, allowing callers
to catch broad or specific error categories as needed.
"""


class PositionDeskError(Exception):
    """Base exception for all PositionDesk errors."""

    def __init__(self, message: str = "", order_id: str | None = None) -> None:
        self.order_id = order_id
        super().__init__(message)


class ValidationError(PositionDeskError):
    """Raised when a requested mutation fails local validation.

    Examples: stop-loss on the wrong side of CMP, negative price,
    non-numeric input. Never reaches the external service.
    """


class InvalidTransitionError(ValidationError):
    """Raised when an order is not in a state the action can start from.

    Examples: adding lots to a HOLD order, holding a CLOSED order.
    """

    def __init__(
        self,
        message: str = "",
        order_id: str | None = None,
        from_status: str | None = None,
        to_status: str | None = None,
    ) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message, order_id)


class InsufficientFundsError(PositionDeskError):
    """Raised when the product's available limit cannot cover added lots."""

    def __init__(
        self,
        message: str = "",
        order_id: str | None = None,
        required: object = None,
        available: object = None,
    ) -> None:
        self.required = required
        self.available = available
        super().__init__(message, order_id)


class TransportError(PositionDeskError):
    """Raised when the market-data transport rejects a subscription change.

    Non-fatal: views fall back to baseline-only data.
    """

    def __init__(
        self,
        message: str = "",
        tokens: list[str] | None = None,
        mode: str | None = None,
    ) -> None:
        self.tokens = tokens or []
        self.mode = mode
        super().__init__(message)


class ServiceError(PositionDeskError):
    """Raised when the funds, order or snapshot service returns a failure.

    Examples: HTTP 5xx, ``success: false`` body, expired access token.
    """

    def __init__(
        self,
        message: str = "",
        order_id: str | None = None,
        status_code: int | None = None,
        service: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.service = service
        super().__init__(message, order_id)


class ConcurrentSubmissionError(PositionDeskError):
    """Raised when a mutation is requested while another one is pending."""


class SessionError(PositionDeskError):
    """Raised when an operation needs an active session and none is set."""


class PermissionDeniedError(PositionDeskError):
    """Raised when a privileged operation is attempted by a regular role."""
