"""Custom application exceptions."""


class AppException(Exception):
    """Base application exception."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, status_code: int = 500, code: str | None = None):
        """Initialize exception with message, status code and machine-readable code."""
        self.message = message
        self.status_code = status_code
        if code is not None:
            self.code = code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class UnauthorizedException(AppException):
    """Unauthorized access exception."""

    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized"):
        """Initialize with 401 status code."""
        super().__init__(message, status_code=401)


class ForbiddenException(AppException):
    """Forbidden access exception."""

    code = "FORBIDDEN"

    def __init__(self, message: str = "Forbidden"):
        """Initialize with 403 status code."""
        super().__init__(message, status_code=403)


class BadRequestException(AppException):
    """Bad request exception."""

    code = "BAD_REQUEST"

    def __init__(self, message: str = "Bad request"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class ConflictException(AppException):
    """Conflict exception."""

    code = "CONFLICT"

    def __init__(self, message: str = "Conflict"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class ValidationException(AppException):
    """Business-rule validation error exception."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str = "Validation error", status_code: int = 400):
        """Initialize with 400 status code unless overridden."""
        super().__init__(message, status_code=status_code)


class InvalidAmountException(AppException):
    """Price configuration prevents a payment-gated booking."""

    code = "INVALID_AMOUNT"

    def __init__(self, message: str = "Appointment price must be greater than zero."):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)


class PaymentNotConfiguredException(AppException):
    """Payment gateway credentials are missing."""

    code = "PAYMENT_NOT_CONFIGURED"

    def __init__(self, message: str = "Payment processing is not configured."):
        """Initialize with 503 status code."""
        super().__init__(message, status_code=503)


class PaymentGatewayException(AppException):
    """Payment gateway returned an error or an unusable response."""

    code = "PAYMENT_GATEWAY_ERROR"

    def __init__(self, message: str = "Payment gateway error"):
        """Initialize with 502 status code."""
        super().__init__(message, status_code=502)


class WebhookSignatureException(AppException):
    """Webhook payload could not be authenticated."""

    code = "WEBHOOK_SIGNATURE_INVALID"

    def __init__(self, message: str = "Invalid webhook signature"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class RefundFailedException(AppException):
    """Refund could not be executed through the payment gateway."""

    code = "REFUND_FAILED"

    def __init__(self, message: str = "Refund failed"):
        """Initialize with 502 status code."""
        super().__init__(message, status_code=502)
