"""
Domain error taxonomy for the lifecycle engine.

Every error carries the HTTP status it maps to. Only ``Unavailable`` is
retryable; the rest are terminal for the request that raised them.
"""
from typing import Optional


class LifecycleError(Exception):
    status_code = 400
    retryable = False
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    @property
    def code(self) -> str:
        return type(self).__name__


class NotFound(LifecycleError):
    status_code = 404
    default_message = "Not found"


class Forbidden(LifecycleError):
    status_code = 403
    default_message = "Forbidden"


class InvalidTransition(LifecycleError):
    status_code = 409
    default_message = "Transition not allowed from the current state"


class AlreadyResponded(InvalidTransition):
    default_message = "Invitation has already been responded to"


class DuplicateInvitation(LifecycleError):
    status_code = 409
    default_message = "A pending invitation already exists for this worker and project"


class Expired(LifecycleError):
    status_code = 410
    default_message = "Invitation has expired"


class ValidationError(LifecycleError):
    status_code = 422
    default_message = "Invalid input"


class InvalidUnit(ValidationError):
    default_message = "Unrecognized wage unit"


class InvalidAmount(ValidationError):
    default_message = "Wage amount must be a finite, non-negative number"


class Unavailable(LifecycleError):
    status_code = 503
    retryable = True
    default_message = "Datastore unavailable, retry later"
