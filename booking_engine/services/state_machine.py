"""
Appointment state machine.

Every status change goes through ``AppointmentStateMachine.transition``.
The status column is updated with a compare-and-swap on the status the
caller read, so two actors racing on one appointment cannot both win. Side
effects (reservation release, reward reversal, refund bookkeeping, audit
row) are written in the same transaction as the status change.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import update

from booking_engine.models import (
    Appointment,
    AppointmentStatus,
    AppointmentStatusLog,
    Payment,
    PaymentStatus,
    Reward,
    RewardStatus,
)
from booking_engine.services.events import appointment_status_changed, emit
from booking_engine.services.calendar_index import CalendarIndex
from booking_engine.services.cancellation_policy import CancellationPolicy, RefundDecision
from booking_engine.services.errors import InvalidTransition, NotFound

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    role: Role
    actor_id: Optional[int] = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(Role.SYSTEM)


S = AppointmentStatus
BUSINESS = frozenset({Role.STAFF, Role.ADMIN})

TRANSITIONS = {
    (S.PENDING, S.CONFIRMED): BUSINESS | {Role.SYSTEM},
    (S.PENDING, S.CANCELLED): BUSINESS | {Role.CUSTOMER, Role.SYSTEM},
    (S.CONFIRMED, S.IN_PROGRESS): BUSINESS,
    (S.CONFIRMED, S.CANCELLED): BUSINESS | {Role.CUSTOMER},
    (S.CONFIRMED, S.NO_SHOW): BUSINESS,
    (S.IN_PROGRESS, S.COMPLETED): BUSINESS,
    (S.IN_PROGRESS, S.CANCELLED): BUSINESS,
    (S.IN_PROGRESS, S.NO_SHOW): BUSINESS,
}

# Targets that free the committed time range
RELEASES_RESERVATION = frozenset({S.CANCELLED, S.NO_SHOW})

TIMESTAMP_FIELDS = {
    S.CONFIRMED: "confirmed_at",
    S.CANCELLED: "cancelled_at",
    S.COMPLETED: "completed_at",
}


def allowed_roles(current, target) -> frozenset:
    return TRANSITIONS.get((AppointmentStatus(current), AppointmentStatus(target)), frozenset())


def next_statuses(current, role: Role) -> list:
    current = AppointmentStatus(current)
    return [
        target.value
        for (source, target), roles in TRANSITIONS.items()
        if source == current and role in roles
    ]


@dataclass(frozen=True)
class TransitionResult:
    appointment: Appointment
    previous: AppointmentStatus
    status: AppointmentStatus
    refund: Optional[RefundDecision] = None

    def to_dict(self) -> dict:
        data = {
            "appointment_id": self.appointment.id,
            "booking_reference": self.appointment.booking_reference,
            "previous_status": self.previous.value,
            "status": self.status.value,
        }
        if self.refund is not None:
            data["refund"] = self.refund.to_dict()
        return data


class AppointmentStateMachine:
    def __init__(
        self,
        session,
        calendar: CalendarIndex,
        policy: CancellationPolicy,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._session = session
        self._calendar = calendar
        self._policy = policy
        self._clock = clock

    def transition(
        self,
        appointment_id: int,
        target,
        actor: Actor,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> TransitionResult:
        """
        Move an appointment to ``target`` on behalf of ``actor``.

        Raises ``InvalidTransition`` for any (status, target, role) not in
        ``TRANSITIONS`` and when another actor changed the status first.
        Customers may only act on their own appointments.
        """
        session = self._session
        target = AppointmentStatus(target)

        appointment = session.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFound(f"Appointment {appointment_id} not found")
        if actor.role == Role.CUSTOMER and appointment.customer_id != actor.actor_id:
            raise NotFound(f"Appointment {appointment_id} not found")

        current = AppointmentStatus(appointment.status)
        if actor.role not in allowed_roles(current, target):
            raise InvalidTransition(current, target, actor.role)

        now = self._clock()
        decision = None
        if target in RELEASES_RESERVATION:
            decision = self._policy.evaluate(appointment, current, target, actor, now)

        values = {"status": target, "updated_at": now}
        if target in TIMESTAMP_FIELDS:
            values[TIMESTAMP_FIELDS[target]] = now
        if target == S.CANCELLED and reason:
            values["cancellation_reason"] = reason
        if decision is not None and decision.refund_amount > 0:
            values["refund_amount"] = decision.refund_amount

        try:
            result = session.execute(
                update(Appointment)
                .where(Appointment.id == appointment.id)
                .where(Appointment.status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                latest = session.get(Appointment, appointment_id)
                logger.info(
                    f"Appointment {appointment_id} moved to {latest.status} "
                    f"before {current.value}->{target.value} applied"
                )
                raise InvalidTransition(latest.status, target, actor.role)

            if target in RELEASES_RESERVATION and appointment.reservation_token:
                self._calendar.release(appointment.reservation_token)
            if decision is not None:
                self._apply_refund(appointment, decision, now)

            session.add(
                AppointmentStatusLog(
                    appointment_id=appointment.id,
                    from_status=current.value,
                    to_status=target.value,
                    actor_role=actor.role.value,
                    actor_id=actor.actor_id,
                    reason=reason,
                    changed_at=now,
                    details=details,
                )
            )
            session.commit()
        except InvalidTransition:
            raise
        except Exception:
            session.rollback()
            raise

        session.refresh(appointment)
        logger.info(
            f"Appointment {appointment.booking_reference} {current.value} -> "
            f"{target.value} by {actor.role.value}"
        )
        emit(
            appointment_status_changed,
            self,
            appointment_id=appointment.id,
            booking_reference=appointment.booking_reference,
            previous=current.value,
            status=target.value,
            actor_role=actor.role.value,
            reason=reason,
        )
        return TransitionResult(appointment, current, target, decision)

    def _apply_refund(self, appointment: Appointment, decision: RefundDecision, now):
        session = self._session
        if decision.restore_reward and appointment.reward_id is not None:
            restored = session.execute(
                update(Reward)
                .where(Reward.id == appointment.reward_id)
                .where(Reward.status == RewardStatus.USED)
                .where(Reward.appointment_id == appointment.id)
                .values(status=RewardStatus.AVAILABLE, used_at=None, appointment_id=None)
                .execution_options(synchronize_session=False)
            )
            if restored.rowcount:
                logger.info(
                    f"Reward {appointment.reward_id} restored from {appointment.booking_reference}"
                )
        if decision.refund_amount > 0:
            session.execute(
                update(Payment)
                .where(Payment.appointment_id == appointment.id)
                .where(Payment.status == PaymentStatus.PAID)
                .values(status=PaymentStatus.REFUNDED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
