"""Refund and reward-restoration rules applied when an appointment ends early."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from booking_engine.models import AppointmentStatus, PaymentStatus
from booking_engine.services.errors import InvalidTransition
from booking_engine.services.pricing import ZERO, to_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundDecision:
    refund_eligible: bool
    refund_amount: Decimal
    restore_reward: bool
    reason: str

    def to_dict(self) -> dict:
        return {
            "refund_eligible": self.refund_eligible,
            "refund_amount": float(self.refund_amount),
            "reward_restored": self.restore_reward,
            "reason": self.reason,
        }


NO_REFUND = RefundDecision(False, ZERO, False, "no_refund")


def amount_paid(appointment) -> Decimal:
    payment = getattr(appointment, "payment", None)
    if payment is not None and payment.status == PaymentStatus.PAID:
        return to_money(appointment.total_price)
    return ZERO


class CancellationPolicy:
    def __init__(self, window_hours: int = 24):
        self.window_hours = window_hours

    @property
    def window(self) -> timedelta:
        return timedelta(hours=self.window_hours)

    def evaluate(self, appointment, source, target, actor, now: datetime) -> RefundDecision:
        """
        Decide refund and reward handling for ``source -> target``.

        ``actor`` carries ``role`` (a ``Role``); customer cancellations of a
        started appointment are refused outright.
        """
        # Local import: state_machine imports this module.
        from booking_engine.services.state_machine import Role

        if target == AppointmentStatus.NO_SHOW:
            return NO_REFUND

        paid = amount_paid(appointment)

        if source == AppointmentStatus.PENDING:
            return RefundDecision(paid > 0, paid, True, "cancelled_before_confirmation")

        if source == AppointmentStatus.IN_PROGRESS:
            return RefundDecision(paid > 0, paid, False, "cancelled_during_service")

        if actor.role != Role.CUSTOMER:
            return RefundDecision(paid > 0, paid, True, "cancelled_by_business")

        if now >= appointment.start_at:
            raise InvalidTransition(
                source,
                target,
                actor.role,
                message="This appointment has already started and can no longer be cancelled",
            )
        if appointment.start_at - now >= self.window:
            return RefundDecision(paid > 0, paid, True, "cancelled_outside_window")

        logger.info(
            "Late cancellation of appointment %s; %s forfeited",
            appointment.id,
            paid,
        )
        return RefundDecision(False, ZERO, False, "late_cancellation")

    def allows_reschedule(self, appointment, actor, now: datetime) -> bool:
        from booking_engine.services.state_machine import Role

        if actor.role != Role.CUSTOMER:
            return True
        return appointment.start_at - now >= self.window

    def summary(self) -> dict:
        return {
            "cancellation_window": self.window_hours,
            "refund_eligible": [
                "Paid appointments cancelled more than "
                f"{self.window_hours} hours before the start time",
                "Appointments cancelled by the salon",
            ],
            "non_refundable": [
                f"Cancellations within {self.window_hours} hours of the start time",
                "No-shows",
                "Cash payments not yet collected",
            ],
            "policy_text": (
                f"Cancel at least {self.window_hours} hours before your appointment "
                "for a full refund of the amount paid. Later cancellations are not "
                "refunded and any reward applied to the booking is forfeited."
            ),
            "reschedule_window": self.window_hours,
            "reschedule_policy": (
                f"Appointments can be rescheduled up to {self.window_hours} hours "
                "before the start time."
            ),
        }
