from typing import Optional


class BookingError(Exception):
    """Base exception for booking engine failures."""

    code = "booking_error"
    http_status = 400

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"success": False, "error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(BookingError):
    """Malformed or inconsistent input, rejected before any side effect."""

    code = "validation_error"
    http_status = 400


class NotFound(BookingError):
    code = "not_found"
    http_status = 404


class SlotUnavailable(BookingError):
    """The requested slot is no longer free. Callers should re-query and retry."""

    code = "slot_unavailable"
    http_status = 409

    def __init__(
        self,
        message: str = "The selected time slot is no longer available",
        *,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details={"retryable": True, **(details or {})})


class InvalidTransition(BookingError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, current, requested, role, message: Optional[str] = None):
        self.current = getattr(current, "value", current)
        self.requested = getattr(requested, "value", requested)
        self.role = getattr(role, "value", role)
        super().__init__(
            message or "This appointment can no longer be changed",
            details={
                "current_status": self.current,
                "requested_status": self.requested,
                "actor_role": self.role,
            },
        )

    def __str__(self):
        return (
            f"{self.message} (current={self.current}, "
            f"requested={self.requested}, role={self.role})"
        )


class PaymentInitiationFailed(BookingError):
    """The gateway hand-off failed; the booking has already been rolled back."""

    code = "payment_initiation_failed"
    http_status = 502


class PricingInvariantViolation(BookingError):
    """A composed price broke an invariant. Programmer error, never clamped away."""

    code = "pricing_invariant_violation"
    http_status = 500
