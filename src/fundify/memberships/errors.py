"""Error taxonomy for membership and payment reconciliation.

Each error carries the HTTP status the server layer answers with. Webhook
callers additionally use ``retryable`` to decide between "drop" and
"ask the processor to redeliver".
"""


class MembershipError(Exception):
    """Base class for all domain errors."""

    status = 500
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ReconcileError(MembershipError):
    """Errors surfaced by the webhook reconciler."""


class Unauthorized(ReconcileError):
    """Webhook signature mismatch or missing credentials."""

    status = 401


class MalformedPayload(ReconcileError):
    """Payload cannot be parsed or lacks required fields."""

    status = 400


class TransientStoreError(ReconcileError):
    """Database contention or connectivity failure; safe to retry."""

    status = 503
    retryable = True


class Forbidden(MembershipError):
    """Caller does not own the resource."""

    status = 403


class NotFound(MembershipError):
    """Resource is missing or no longer available."""

    status = 404


class ValidationError(MembershipError):
    """Input failed validation."""

    status = 422


class Conflict(MembershipError):
    """Operation conflicts with existing state."""

    status = 409


class InvalidState(MembershipError):
    """Transition requested from a state that does not allow it."""

    status = 409
