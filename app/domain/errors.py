from __future__ import annotations


class DomainError(Exception):
    status_code = 400
    title = "Domain Error"
    code = "DOMAIN_ERROR"
    type: str | None = None

    def __init__(
        self,
        detail: str,
        *,
        code: str | None = None,
        errors: list[dict[str, str]] | None = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        if code:
            self.code = code
        self.errors = errors or []


class ValidationError(DomainError):
    status_code = 400
    title = "Invalid Request"
    code = "INVALID_REQUEST"


class NotFoundError(DomainError):
    status_code = 404
    title = "Not Found"
    code = "NOT_FOUND"


class ConflictError(DomainError):
    status_code = 409
    title = "Time Slot Unavailable"
    code = "TIME_SLOT_UNAVAILABLE"


class InvalidStateError(DomainError):
    status_code = 400
    title = "Invalid Booking State"
    code = "INVALID_STATUS"


class PermissionDeniedError(DomainError):
    status_code = 403
    title = "Permission Denied"
    code = "INSUFFICIENT_PERMISSIONS"


class ExpiredError(DomainError):
    status_code = 400
    title = "Booking Expired"
    code = "BOOKING_EXPIRED"
