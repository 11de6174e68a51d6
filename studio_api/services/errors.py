"""
Typed errors raised by the scheduling and registration services.

Every rejected precondition has its own class so callers can render the exact
reason. ``code`` is the stable machine-readable name sent over HTTP and
``details`` carries structured context (conflicting bookings, counters, ids).
"""

from typing import Any, Dict, Optional


class StudioError(Exception):
    code = "STUDIO_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "error": self.message,
            "type": self.code,
            "details": self.details,
        }


# --- Base taxonomy ---


class ValidationError(StudioError):
    code = "VALIDATION_ERROR"
    http_status = 422


class ConflictError(StudioError):
    code = "CONFLICT"
    http_status = 409


class StateError(StudioError):
    code = "INVALID_STATE"
    http_status = 400


class ConcurrencyError(StudioError):
    """Lost a compare-and-update race. Retried once before surfacing."""

    code = "CONCURRENCY"
    http_status = 409


class NotFoundError(StudioError):
    code = "NOT_FOUND"
    http_status = 404


# --- Ledger ---


class NoActiveSubscription(ConflictError):
    code = "NO_ACTIVE_SUBSCRIPTION"


class NoSessionsRemaining(ConflictError):
    code = "NO_SESSIONS_REMAINING"


class CourseFull(ConflictError):
    code = "COURSE_FULL"


class AlreadyRegistered(ConflictError):
    code = "ALREADY_REGISTERED"


# --- Registration ---


class OverlapConflict(ConflictError):
    code = "OVERLAP"


class InvalidTransition(StateError):
    code = "INVALID_TRANSITION"


class CourseNotBookable(StateError):
    code = "COURSE_NOT_BOOKABLE"


class CourseAlreadyStarted(StateError):
    code = "COURSE_ALREADY_STARTED"


# --- Schedules ---


class ScheduleLocked(StateError):
    code = "SCHEDULE_LOCKED"


class CourseHasBookings(StateError):
    code = "COURSE_HAS_BOOKINGS"


# --- Check-in ---


class InvalidToken(NotFoundError):
    code = "INVALID_TOKEN"


class AlreadyCheckedIn(ConflictError):
    code = "ALREADY_CHECKED_IN"


class NotRegistered(StateError):
    code = "NOT_REGISTERED"
