from decimal import Decimal


class ServiceError(Exception):
    """Base class for service-layer errors."""

    status_code = 400

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.code = code or "service_error"


class ValidationError(ServiceError):
    def __init__(self, message: str = "Validation error"):
        super().__init__(message, code="validation_error")


class ForbiddenError(ServiceError):
    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message, code="forbidden")


class NotFoundError(ServiceError):
    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="not_found")


class ConflictError(ServiceError):
    status_code = 409

    def __init__(self, message: str = "Conflict"):
        super().__init__(message, code="conflict")


class InsufficientBalanceError(ServiceError):
    status_code = 402

    def __init__(self, required: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient balance. Required: {required}, available: {available}",
            code="insufficient_balance",
        )
        self.required = required
        self.available = available


class InvalidTransitionError(ServiceError):
    status_code = 409

    def __init__(self, message: str):
        super().__init__(message, code="invalid_transition")


class LimitExceededError(ServiceError):
    status_code = 403

    def __init__(self, message: str):
        super().__init__(message, code="limit_exceeded")


class UpstreamProviderError(ServiceError):
    status_code = 502

    def __init__(self, message: str, *, provider: str | None = None, provider_code: str | None = None):
        super().__init__(message, code="upstream_error")
        self.provider = provider
        self.provider_code = provider_code
