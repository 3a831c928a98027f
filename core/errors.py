class AttendanceError(Exception):
    """Base exception for the attendance engine."""


class InvalidCoordinates(AttendanceError):
    """Raised when a latitude/longitude pair is malformed or out of range."""

    def __init__(self, latitude, longitude):
        self.latitude = latitude
        self.longitude = longitude
        super().__init__(f"Invalid coordinates provided: ({latitude}, {longitude})")


class Forbidden(AttendanceError):
    """Raised when a caller lacks the observer capability for an action."""


class StoreUnavailable(AttendanceError):
    """The attendance store timed out or refused the connection. Safe to retry."""

    retryable = True
