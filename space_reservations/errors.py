from __future__ import annotations


class ReservationError(Exception):
    """Base class for every error the reservation core reports to callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ReservationError):
    status_code = 400


class TimeRangeError(ValidationError):
    pass


class FormatError(TimeRangeError):
    pass


class OrderError(TimeRangeError):
    pass


class DurationError(TimeRangeError):
    pass


class WindowError(TimeRangeError):
    pass


class UnauthorizedError(ReservationError):
    status_code = 401

    def __init__(self, message: str = "Authentication token required.") -> None:
        super().__init__(message)


class ForbiddenError(ReservationError):
    status_code = 403


class NotFoundError(ReservationError):
    status_code = 404


class ConflictError(ReservationError):
    status_code = 409


class ConfigurationError(ValueError):
    pass
