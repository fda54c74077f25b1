"""
Domain errors raised by the referral controller and the payment coordinator.

Each error carries a stable ``code`` that the HTTP layer returns to callers.
None of them is raised after a partial write: when one of these surfaces,
the store is unchanged.
"""

from __future__ import annotations


class LifecycleError(Exception):
    """Base class for lifecycle errors surfaced to callers."""

    code = "lifecycle_error"


class PermissionDeniedError(LifecycleError):
    """The actor is not the authorized party for the requested change."""

    code = "permission_denied"


class InvalidTransitionError(LifecycleError):
    """The requested status is not reachable from the current one."""

    code = "invalid_transition"


class ConflictError(LifecycleError):
    """A concurrent writer changed the document first; re-read and retry."""

    code = "conflict"


class PaymentVerificationFailedError(LifecycleError):
    """The gateway signature did not match; no session was created."""

    code = "payment_verification_failed"


class PaymentTimeoutError(LifecycleError):
    """The self-attested payment window closed before confirmation."""

    code = "payment_timeout"


class SlotUnavailableError(LifecycleError):
    """The mentor already has a session overlapping the requested time."""

    code = "slot_unavailable"


class BookingValidationError(LifecycleError):
    """The booking request is incomplete or refers to an unusable service."""

    code = "booking_invalid"
