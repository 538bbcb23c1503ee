from typing import Any


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id={identifier} not found"
        super().__init__(message=message, status_code=404, details={"code": "not_found"})


class ValidationError(AppException):
    """Validation error (malformed amount, date, percentage, missing reason)."""

    def __init__(self, message: str, field: str | None = None):
        details = {"field": field} if field else {}
        super().__init__(message=message, status_code=422, details=details)


class AuthenticationError(AppException):
    """Authentication failed."""

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message=message, status_code=401)


class AuthorizationError(AppException):
    """Not authorized to perform action."""

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message=message, status_code=403, details={"code": "forbidden"})


class ConflictError(AppException):
    """Uniqueness violation or lost status race; retry against fresh state."""

    def __init__(self, message: str, code: str = "conflict"):
        super().__init__(message=message, status_code=409, details={"code": code})


class DuplicateError(ConflictError):
    """Duplicate resource."""

    def __init__(self, resource: str, field: str, value: Any):
        message = f"{resource} with {field}={value} already exists"
        super().__init__(message=message, code="duplicate")
        self.details.update({"field": field, "value": value})


class InvalidTransitionError(ConflictError):
    """Status change not allowed from the current state."""

    def __init__(self, entity: str, current: str, target: str):
        message = f"{entity} cannot move from '{current}' to '{target}'"
        super().__init__(message=message, code="invalid_transition")
        self.details.update({"from": current, "to": target})


class VoucherUnavailableError(AppException):
    """Voucher exists but cannot be redeemed now (inactive, expired, exhausted, not applicable)."""

    def __init__(self, message: str, code: str):
        super().__init__(message=message, status_code=400, details={"code": code})
        self.code = code


class GatewayError(AppException):
    """Card gateway call failed or returned an unexpected payload."""

    def __init__(self, message: str = "Payment gateway error"):
        super().__init__(message=message, status_code=502, details={"code": "gateway_error"})
