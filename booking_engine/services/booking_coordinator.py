"""
Booking coordinator.

``book`` runs one booking request end to end:

    validate -> re-check the exact slot -> reserve -> price ->
    appointment + payment row + reward consumption (one commit) ->
    payment gateway hand-off -> confirm, or leave pending for a redirect

The reservation commits on its own (it is the linearization point). If the
appointment transaction fails afterwards the reservation is released before
the error propagates. A failed gateway hand-off runs the regular
``pending -> cancelled`` transition, which releases the slot and the reward.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from booking_engine.models import (
    Appointment,
    AppointmentStatus,
    AppointmentStatusLog,
    Payment,
    PaymentMethod,
    PaymentMethodType,
    PaymentStatus,
    Reward,
    RewardStatus,
    Service,
)
from booking_engine.services.calendar_index import CalendarIndex, Conflict
from booking_engine.services.cancellation_policy import CancellationPolicy
from booking_engine.services.errors import (
    InvalidTransition,
    NotFound,
    PaymentInitiationFailed,
    SlotUnavailable,
    ValidationError,
)
from booking_engine.services.events import (
    appointment_created,
    appointment_rescheduled,
    emit,
)
from booking_engine.services.payment_gateway import GatewayRegistry, GatewayResult
from booking_engine.services.pricing import (
    FeeSchedule,
    PriceBreakdown,
    PromotionTerms,
    compose,
)
from booking_engine.services.settings import BookingSettings
from booking_engine.services.slot_resolver import SlotResolver, committed_minutes
from booking_engine.services.state_machine import (
    Actor,
    AppointmentStateMachine,
    Role,
)

logger = logging.getLogger(__name__)


def new_booking_reference() -> str:
    return f"BK-{uuid.uuid4().hex[:8].upper()}"


def parse_date(value, field_name="date") -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field_name}, expected YYYY-MM-DD")


def parse_time(value, field_name="time") -> time:
    if isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field_name}, expected HH:MM")


def _optional_int(data: dict, key: str) -> Optional[int]:
    value = data.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


@dataclass(frozen=True)
class BookingRequest:
    service_id: int
    appointment_date: date
    appointment_time: time
    customer_id: int
    payment_method_id: int
    staff_id: Optional[int] = None
    reward_id: Optional[int] = None
    notes: Optional[str] = None
    payment_reference: Optional[str] = None
    customer_email: Optional[str] = None

    @classmethod
    def from_payload(cls, data: dict, customer_id: int) -> "BookingRequest":
        """Build a request from the booking form payload (``date``/``time`` or ``appointment_*``)."""
        missing = [
            key
            for key in ("service_id", "payment_method_id")
            if data.get(key) in (None, "")
        ]
        raw_date = data.get("appointment_date") or data.get("date")
        raw_time = data.get("appointment_time") or data.get("time")
        if not raw_date:
            missing.append("date")
        if not raw_time:
            missing.append("time")
        if missing:
            raise ValidationError(
                "Missing required fields", details={"missing": missing}
            )
        if customer_id is None:
            raise ValidationError("A customer is required to book")

        return cls(
            service_id=_optional_int(data, "service_id"),
            appointment_date=parse_date(raw_date),
            appointment_time=parse_time(raw_time),
            customer_id=int(customer_id),
            payment_method_id=_optional_int(data, "payment_method_id"),
            staff_id=_optional_int(data, "staff_id"),
            reward_id=_optional_int(data, "reward_id"),
            notes=data.get("message") or data.get("notes"),
            payment_reference=data.get("payment_reference"),
            customer_email=data.get("email"),
        )


@dataclass(frozen=True)
class BookingOutcome:
    appointment: Appointment
    price: PriceBreakdown
    redirect_url: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "success": True,
            "appointment": serialize_appointment(self.appointment),
            "price": self.price.to_dict(),
        }
        if self.redirect_url:
            data["authorization_url"] = self.redirect_url
        return data


def serialize_appointment(appointment: Appointment) -> dict:
    payment = appointment.payment
    return {
        "id": appointment.id,
        "booking_reference": appointment.booking_reference,
        "service_id": appointment.service_id,
        "service_name": appointment.service_name,
        "staff_id": appointment.staff_id,
        "customer_id": appointment.customer_id,
        "appointment_date": appointment.appointment_date.isoformat(),
        "appointment_time": appointment.appointment_time.strftime("%H:%M"),
        "duration_minutes": appointment.duration_minutes,
        "status": AppointmentStatus(appointment.status).value,
        "price": float(appointment.price),
        "discount_amount": float(appointment.discount_amount),
        "reward_amount": float(appointment.reward_amount),
        "fee_amount": float(appointment.fee_amount),
        "total_price": float(appointment.total_price),
        "refund_amount": (
            float(appointment.refund_amount)
            if appointment.refund_amount is not None
            else None
        ),
        "payment_method_id": appointment.payment_method_id,
        "payment_status": PaymentStatus(payment.status).value if payment else None,
        "reward_id": appointment.reward_id,
        "cancellation_reason": appointment.cancellation_reason,
        "notes": appointment.notes,
        "confirmed_at": _iso(appointment.confirmed_at),
        "cancelled_at": _iso(appointment.cancelled_at),
        "completed_at": _iso(appointment.completed_at),
        "created_at": _iso(appointment.created_at),
    }


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


class BookingCoordinator:
    def __init__(
        self,
        session,
        calendar: CalendarIndex,
        resolver: SlotResolver,
        state_machine: AppointmentStateMachine,
        policy: CancellationPolicy,
        gateways: GatewayRegistry,
        settings: BookingSettings,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._session = session
        self._calendar = calendar
        self._resolver = resolver
        self._state_machine = state_machine
        self._policy = policy
        self._gateways = gateways
        self._settings = settings
        self._clock = clock

    # -- validation ---------------------------------------------------------

    def _service(self, service_id) -> Service:
        service = self._session.get(Service, service_id)
        if service is None:
            raise NotFound(f"Service {service_id} not found")
        if not service.is_active:
            raise ValidationError("This service is not currently available")
        return service

    def _payment_method(self, payment_method_id, service: Service) -> PaymentMethod:
        method = self._session.get(PaymentMethod, payment_method_id)
        if method is None or (
            method.tenant_id is not None and method.tenant_id != service.tenant_id
        ):
            raise NotFound(f"Payment method {payment_method_id} not found")
        if not method.is_active:
            raise ValidationError("This payment method is not currently available")
        return method

    def _reward(self, reward_id, customer_id, now) -> Optional[Reward]:
        if reward_id is None:
            return None
        reward = self._session.get(Reward, reward_id)
        if reward is None:
            raise NotFound(f"Reward {reward_id} not found")
        if reward.user_id != customer_id:
            raise ValidationError("This reward does not belong to you")
        if reward.status != RewardStatus.AVAILABLE or reward.is_expired(now):
            raise ValidationError("This reward is no longer available")
        return reward

    def _check_slot_shape(
        self, tenant_id: int, day: date, start: time, duration_minutes: int, now
    ):
        if datetime.combine(day, start) <= now:
            raise ValidationError("Appointment time is in the past")
        hours = self._resolver.opening_hours(tenant_id, day)
        if hours is None:
            raise ValidationError(f"The salon is closed on {day.strftime('%A')}s")
        if not self._settings.is_on_grid(start, opening=hours[0]):
            raise ValidationError(
                f"Appointments start on {self._settings.slot_step_minutes}-minute steps"
            )
        if not self._resolver.fits_day(tenant_id, day, start, duration_minutes):
            raise ValidationError("The service would end after closing time")

    def _validate(self, request: BookingRequest, now):
        service = self._service(request.service_id)
        self._check_slot_shape(
            service.tenant_id,
            request.appointment_date,
            request.appointment_time,
            int(service.duration),
            now,
        )
        method = self._payment_method(request.payment_method_id, service)
        if method.requires_reference and not request.payment_reference:
            raise ValidationError(f"{method.name} requires a payment reference")
        if request.staff_id is not None and request.staff_id not in (
            self._resolver.eligible_staff_ids(service)
        ):
            raise ValidationError("The selected staff member does not offer this service")
        reward = self._reward(request.reward_id, request.customer_id, now)
        return service, method, reward

    # -- pricing ------------------------------------------------------------

    def _price(self, service, method, reward, now) -> PriceBreakdown:
        return compose(
            service.price,
            promotion=PromotionTerms.active_for(service, now),
            reward_amount=reward.value if reward is not None else None,
            fees=FeeSchedule.for_method(method),
        )

    def quote(
        self,
        service_id: int,
        payment_method_id: int,
        reward_id: Optional[int] = None,
        customer_id: Optional[int] = None,
    ) -> PriceBreakdown:
        now = self._clock()
        service = self._service(service_id)
        method = self._payment_method(payment_method_id, service)
        reward = self._reward(reward_id, customer_id, now)
        return self._price(service, method, reward, now)

    # -- booking ------------------------------------------------------------

    def _reserve(self, service, lanes, day, start, replacing=None):
        minutes = committed_minutes(service)
        for lane in lanes:
            result = self._calendar.reserve(
                service.tenant_id, lane, day, start, minutes, replacing=replacing
            )
            if not isinstance(result, Conflict):
                return result
        raise SlotUnavailable(
            details={"date": day.isoformat(), "time": start.strftime("%H:%M")}
        )

    def book(self, request: BookingRequest) -> BookingOutcome:
        session = self._session
        now = self._clock()
        service, method, reward = self._validate(request, now)
        price = self._price(service, method, reward, now)

        day, start = request.appointment_date, request.appointment_time
        lanes = self._resolver.free_lanes_at(service, day, start, request.staff_id)
        if not lanes:
            raise SlotUnavailable(
                details={"date": day.isoformat(), "time": start.strftime("%H:%M")}
            )
        token = self._reserve(service, lanes, day, start)

        try:
            appointment = Appointment(
                booking_reference=new_booking_reference(),
                tenant_id=service.tenant_id,
                service_id=service.id,
                staff_id=token.staff_id,
                customer_id=request.customer_id,
                appointment_date=day,
                appointment_time=start,
                start_at=token.range.start,
                end_at=token.range.end,
                service_name=service.name,
                duration_minutes=int(service.duration),
                buffer_minutes=int(service.buffer_after or 0),
                price=price.base_price,
                discount_amount=price.discount,
                reward_amount=price.reward_applied,
                fee_amount=price.fee,
                total_price=price.total,
                payment_method_id=method.id,
                reward_id=reward.id if reward is not None else None,
                reservation_token=token.token,
                status=AppointmentStatus.PENDING,
                notes=request.notes,
                created_at=now,
                updated_at=now,
            )
            session.add(appointment)
            session.flush()

            if reward is not None:
                consumed = session.execute(
                    update(Reward)
                    .where(Reward.id == reward.id)
                    .where(Reward.status == RewardStatus.AVAILABLE)
                    .values(
                        status=RewardStatus.USED,
                        used_at=now,
                        appointment_id=appointment.id,
                    )
                    .execution_options(synchronize_session=False)
                )
                if consumed.rowcount != 1:
                    raise ValidationError("This reward is no longer available")

            session.add(
                Payment(
                    appointment_id=appointment.id,
                    user_id=request.customer_id,
                    payment_method_id=method.id,
                    amount=price.total,
                    method_type=PaymentMethodType(method.type),
                    status=PaymentStatus.PENDING,
                    reference=request.payment_reference or appointment.booking_reference,
                    created_at=now,
                    updated_at=now,
                )
            )
            session.add(
                AppointmentStatusLog(
                    appointment_id=appointment.id,
                    from_status=None,
                    to_status=AppointmentStatus.PENDING.value,
                    actor_role=Role.CUSTOMER.value,
                    actor_id=request.customer_id,
                    reason="booked",
                    changed_at=now,
                )
            )
            session.commit()
        except Exception as e:
            session.rollback()
            self._calendar.release(token)
            session.commit()
            logger.warning(f"Booking rolled back, reservation {token.token} released: {e}")
            if isinstance(e, IntegrityError):
                raise ValidationError("This payment reference has already been used")
            raise

        logger.info(
            f"Appointment {appointment.booking_reference} created for customer "
            f"{request.customer_id} ({service.name}, {day} {start})"
        )
        emit(
            appointment_created,
            self,
            appointment_id=appointment.id,
            booking_reference=appointment.booking_reference,
            total=price.total,
        )
        return self._hand_off(appointment, method, price, request.customer_email)

    def _hand_off(self, appointment, method, price, email) -> BookingOutcome:
        method_type = PaymentMethodType(method.type)
        gateway = self._gateways.for_method(method_type)
        try:
            result = gateway.initialize(
                price.total, method_type, appointment.booking_reference, email
            )
        except Exception as e:
            logger.error(f"Gateway initialize raised for {appointment.booking_reference}: {e}")
            result = GatewayResult(ok=False, error=str(e))

        if not result.ok:
            appointment.payment.status = PaymentStatus.FAILED
            appointment.payment.gateway_response = result.raw or {"error": result.error}
            self._state_machine.transition(
                appointment.id,
                AppointmentStatus.CANCELLED,
                Actor.system(),
                reason="payment_initiation_failed",
            )
            raise PaymentInitiationFailed(
                result.error or "Payment could not be initialized",
                details={"booking_reference": appointment.booking_reference},
            )

        if result.requires_redirect:
            appointment.payment.gateway_response = result.raw
            self._session.commit()
            return BookingOutcome(appointment, price, result.redirect_url)

        self._state_machine.transition(
            appointment.id,
            AppointmentStatus.CONFIRMED,
            Actor.system(),
            reason=f"{method_type.value}_booking",
        )
        return BookingOutcome(appointment, price)

    # -- payment results ----------------------------------------------------

    def payment_for_reference(self, reference: str) -> Payment:
        payment = self._session.scalars(
            select(Payment).where(Payment.reference == reference)
        ).first()
        if payment is None:
            raise NotFound(f"No payment with reference {reference}")
        return payment

    def handle_payment_result(
        self,
        reference: str,
        success: bool,
        gateway_response: Optional[dict] = None,
        paid_amount: Optional[Decimal] = None,
    ) -> Appointment:
        """
        Apply a gateway callback or webhook.

        Results for appointments that already left ``pending`` are no-ops, so
        repeated deliveries are safe. A success whose reported ``paid_amount``
        differs from the booked total counts as a failed payment.
        """
        payment = self.payment_for_reference(reference)
        appointment = payment.appointment
        if success and paid_amount is not None and paid_amount != payment.amount:
            logger.warning(
                f"Payment {reference} reported {paid_amount}, expected {payment.amount}; "
                "treating it as failed"
            )
            success = False
        current = AppointmentStatus(appointment.status)

        if current != AppointmentStatus.PENDING:
            if success and current == AppointmentStatus.CANCELLED:
                logger.warning(
                    f"Payment {reference} succeeded for cancelled appointment "
                    f"{appointment.booking_reference}"
                )
            else:
                logger.info(f"Ignoring repeated payment result for {reference}")
            return appointment

        now = self._clock()
        if success:
            payment.status = PaymentStatus.PAID
            payment.paid_at = now
        else:
            payment.status = PaymentStatus.FAILED
        payment.gateway_response = gateway_response
        payment.updated_at = now

        try:
            self._state_machine.transition(
                appointment.id,
                AppointmentStatus.CONFIRMED if success else AppointmentStatus.CANCELLED,
                Actor.system(),
                reason="payment_succeeded" if success else "payment_failed",
            )
        except InvalidTransition:
            # Raced with the stale-pending sweep or a customer cancellation
            logger.warning(f"Payment result for {reference} arrived after a status change")
        return appointment

    def confirm_from_gateway(self, reference: str) -> Appointment:
        """Browser callback: ask the gateway what happened, then apply it."""
        payment = self.payment_for_reference(reference)
        gateway = self._gateways.for_method(payment.method_type)
        verification = gateway.verify(reference)
        return self.handle_payment_result(
            reference,
            verification.success,
            verification.raw or None,
            paid_amount=verification.amount,
        )

    def mark_paid(self, payment_id: int, actor: Actor) -> Payment:
        if actor.role not in (Role.STAFF, Role.ADMIN):
            raise ValidationError("Only staff can mark payments as paid")
        payment = self._session.get(Payment, payment_id)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found")
        if payment.status == PaymentStatus.PAID:
            return payment
        if payment.status != PaymentStatus.PENDING:
            raise ValidationError(
                f"A {PaymentStatus(payment.status).value} payment cannot be marked as paid"
            )
        now = self._clock()
        payment.status = PaymentStatus.PAID
        payment.paid_at = now
        payment.updated_at = now
        self._session.commit()
        logger.info(f"Payment {payment.reference} marked paid by staff {actor.actor_id}")
        return payment

    # -- reschedule ---------------------------------------------------------

    def reschedule(
        self, appointment_id: int, new_date: date, new_time: time, actor: Actor
    ) -> Appointment:
        session = self._session
        appointment = session.get(Appointment, appointment_id)
        if appointment is None or (
            actor.role == Role.CUSTOMER and appointment.customer_id != actor.actor_id
        ):
            raise NotFound(f"Appointment {appointment_id} not found")

        current = AppointmentStatus(appointment.status)
        if current not in (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED):
            raise InvalidTransition(current, "rescheduled", actor.role)

        now = self._clock()
        if not self._policy.allows_reschedule(appointment, actor, now):
            raise ValidationError(
                "Appointments can only be rescheduled at least "
                f"{self._settings.cancellation_window_hours} hours in advance"
            )
        self._check_slot_shape(
            appointment.tenant_id, new_date, new_time, appointment.duration_minutes, now
        )

        service = appointment.service
        lanes = self._resolver.lanes_for(service, appointment.staff_id)
        lanes = self._resolver.order_for_assignment(service.tenant_id, lanes)
        old_start = appointment.start_at
        old_token = appointment.reservation_token
        minutes = appointment.duration_minutes + appointment.buffer_minutes

        token = None
        for lane in lanes:
            result = self._calendar.reserve(
                appointment.tenant_id,
                lane,
                new_date,
                new_time,
                minutes,
                replacing=old_token,
            )
            if not isinstance(result, Conflict):
                token = result
                break
        if token is None:
            raise SlotUnavailable(
                details={"date": new_date.isoformat(), "time": new_time.strftime("%H:%M")}
            )

        try:
            appointment.appointment_date = new_date
            appointment.appointment_time = new_time
            appointment.start_at = token.range.start
            appointment.end_at = token.range.end
            appointment.staff_id = token.staff_id
            appointment.reservation_token = token.token
            appointment.updated_at = now
            session.add(
                AppointmentStatusLog(
                    appointment_id=appointment.id,
                    from_status=current.value,
                    to_status=current.value,
                    actor_role=actor.role.value,
                    actor_id=actor.actor_id,
                    reason="rescheduled",
                    changed_at=now,
                    details={
                        "from": old_start.isoformat(),
                        "to": token.range.start.isoformat(),
                    },
                )
            )
            if old_token:
                self._calendar.release(old_token)
            session.commit()
        except Exception:
            # The old reservation is still live: only the new one is undone
            session.rollback()
            self._calendar.release(token)
            session.commit()
            logger.error(
                f"Reschedule of {appointment_id} failed after reserving {token.token}; "
                f"kept {old_token}"
            )
            raise

        logger.info(
            f"Appointment {appointment.booking_reference} moved from {old_start} "
            f"to {token.range.start}"
        )
        emit(
            appointment_rescheduled,
            self,
            appointment_id=appointment.id,
            booking_reference=appointment.booking_reference,
            previous_start=old_start,
            start=token.range.start,
        )
        return appointment
