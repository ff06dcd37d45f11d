from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(ServiceError):
    """Bad amount, missing field or malformed metadata. No state change."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class NotFoundError(ServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_404_NOT_FOUND)


class DuplicateReference(ServiceError):
    """Ledger already holds this reference; the caller must generate a new one."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"Payment reference already exists: {reference}", status.HTTP_409_CONFLICT)
        self.reference = reference


class BalanceExceeded(ServiceError):
    def __init__(self, message: str = "Payment amount cannot exceed outstanding balance") -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class InvariantViolation(ServiceError):
    """Request contradicts ledger state (e.g. paying a waived fee). Not retried."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_409_CONFLICT)


class GatewayError(ServiceError):
    """Remote payment gateway failure. The payment record stays pending."""


class GatewayUnavailable(GatewayError):
    def __init__(self, message: str = "Payment gateway is unavailable") -> None:
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE)


class GatewayRejected(GatewayError):
    def __init__(self, message: str = "Payment gateway rejected the request") -> None:
        super().__init__(message, status.HTTP_502_BAD_GATEWAY)


class SignatureInvalid(ServiceError):
    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message, status.HTTP_401_UNAUTHORIZED)
