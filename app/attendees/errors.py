from __future__ import annotations


class AttendanceError(Exception):
    code = "AttendanceError"
    status_code = 400
    default_message = "Attendance operation failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def as_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ClaimValidationError(AttendanceError):
    pass


class StateError(AttendanceError):
    status_code = 409


class AuthError(AttendanceError):
    status_code = 403


class AlreadyClaimed(ClaimValidationError):
    code = "AlreadyClaimed"
    status_code = 409
    default_message = "Attendance already claimed for this event"


class InvalidEventId(ClaimValidationError):
    code = "InvalidEventId"
    default_message = "event_id must be a non-empty string of at most 64 bytes"


class IdentityNotFound(StateError):
    code = "IdentityNotFound"
    status_code = 404
    default_message = "No attendee record for this identity"


class IdentityAlreadyInitialized(StateError):
    code = "IdentityAlreadyInitialized"
    default_message = "Attendee record already initialized"


class CounterOverflow(StateError):
    code = "CounterOverflow"
    default_message = "Attendance counter is at its maximum"


class StaleRecord(StateError):
    code = "StaleRecord"
    default_message = "Attendee record was modified concurrently"


class InvalidSignature(AuthError):
    code = "InvalidSignature"
    default_message = "Invalid attendance credential"
