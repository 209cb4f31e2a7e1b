"""Core utilities and security modules."""

from sitswap.core.exceptions import (
    AppException,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    DatesNotAvailable,
    ExternalServiceError,
    InvalidBookingStatus,
    NotFoundError,
    PaymentError,
    RateLimitExceeded,
    ValidationError,
    WebhookProcessingError,
)
from sitswap.core.security import create_access_token, verify_token

__all__ = [
    "AppException",
    "AuthenticationError",
    "AuthorizationError",
    "ConflictError",
    "DatesNotAvailable",
    "ExternalServiceError",
    "InvalidBookingStatus",
    "NotFoundError",
    "PaymentError",
    "RateLimitExceeded",
    "ValidationError",
    "WebhookProcessingError",
    "create_access_token",
    "verify_token",
]
