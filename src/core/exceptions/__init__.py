from src.core.exceptions.base import (
    AppException,
    NotFoundError,
    ValidationError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    DuplicateError,
    InvalidTransitionError,
    VoucherUnavailableError,
    GatewayError,
)

__all__ = [
    "AppException",
    "NotFoundError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "ConflictError",
    "DuplicateError",
    "InvalidTransitionError",
    "VoucherUnavailableError",
    "GatewayError",
]
