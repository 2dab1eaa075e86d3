from datetime import date, time, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import event, select

from booking_engine.models import (
    Appointment,
    AppointmentStatus,
    AppointmentStatusLog,
    Payment,
    PaymentMethodType,
    PaymentStatus,
    Reservation,
    Reward,
    RewardStatus,
)
from booking_engine.services.booking_coordinator import BookingRequest
from booking_engine.services.errors import (
    InvalidTransition,
    NotFound,
    PaymentInitiationFailed,
    SlotUnavailable,
    ValidationError,
)
from booking_engine.services.events import appointment_created, appointment_rescheduled
from booking_engine.services.state_machine import Actor, Role
from tests.helpers import BOOKING_DAY, CUSTOMER_ID, NOW, OTHER_CUSTOMER_ID, TOMORROW

CUSTOMER = Actor(Role.CUSTOMER, CUSTOMER_ID)
STAFF = Actor(Role.STAFF, 1)


def open_times(engine, service, day=BOOKING_DAY, staff_id=None):
    return {
        slot.start: slot.staff_ids
        for slot in engine.resolver.available_slots(service, day, staff_id=staff_id)
    }


def by_reference(db_session, reference):
    return db_session.scalars(
        select(Appointment).where(Appointment.booking_reference == reference)
    ).one()


def live_reservations(db_session):
    return db_session.scalars(
        select(Reservation).where(Reservation.released_at.is_(None))
    ).all()


@pytest.mark.booking
class TestBook:
    def test_cash_booking_is_confirmed_immediately(self, engine, make_request):
        outcome = engine.coordinator.book(make_request())
        appointment = outcome.appointment

        assert appointment.status == AppointmentStatus.CONFIRMED
        assert appointment.booking_reference.startswith("BK-")
        assert appointment.staff_id == 1
        assert appointment.total_price == Decimal("50.00")
        assert appointment.confirmed_at == NOW
        assert appointment.payment.status == PaymentStatus.PENDING
        assert appointment.payment.reference == appointment.booking_reference
        assert outcome.redirect_url is None
        assert "authorization_url" not in outcome.to_dict()

    def test_card_booking_waits_for_the_gateway(self, engine, make_request, payment_methods, card_gateway):
        outcome = engine.coordinator.book(make_request(payment_method_id=payment_methods["card"].id))
        reference = outcome.appointment.booking_reference

        assert outcome.appointment.status == AppointmentStatus.PENDING
        assert outcome.redirect_url == f"https://checkout.paystack.test/{reference}"
        assert outcome.to_dict()["authorization_url"] == outcome.redirect_url
        assert card_gateway.initialized == [(Decimal("51.25"), PaymentMethodType.CARD, reference)]

    def test_snapshot_fields_survive_catalogue_changes(self, engine, make_request, sample_service, db_session):
        appointment = engine.coordinator.book(make_request()).appointment

        sample_service.price = Decimal("99.00")
        sample_service.name = "Premium Haircut"
        db_session.commit()

        assert appointment.price == Decimal("50.00")
        assert appointment.service_name == "Haircut"
        assert appointment.duration_minutes == 60
        assert appointment.buffer_minutes == 15

    def test_reward_is_consumed_with_the_booking(self, engine, make_request, sample_reward, db_session):
        outcome = engine.coordinator.book(make_request(reward_id=sample_reward.id))

        reward = db_session.get(Reward, sample_reward.id)
        assert outcome.price.total == Decimal("30.00")
        assert outcome.appointment.reward_amount == Decimal("20.00")
        assert reward.status == RewardStatus.USED
        assert reward.appointment_id == outcome.appointment.id
        assert reward.used_at == NOW

    def test_promotion_is_applied(self, engine, make_request, promoted_service):
        outcome = engine.coordinator.book(make_request(service_id=promoted_service.id))

        assert outcome.price.discount == Decimal("40.00")
        assert outcome.appointment.total_price == Decimal("160.00")

    def test_booking_log_row(self, engine, make_request, db_session):
        appointment = engine.coordinator.book(make_request()).appointment

        rows = appointment.status_log
        assert [(r.from_status, r.to_status, r.reason) for r in rows] == [
            (None, "pending", "booked"),
            ("pending", "confirmed", "cash_booking"),
        ]
        assert rows[0].actor_role == "customer"
        assert rows[0].actor_id == CUSTOMER_ID

    def test_created_event(self, engine, make_request):
        received = []

        def listener(sender, **payload):
            received.append(payload)

        appointment_created.connect(listener)
        try:
            appointment = engine.coordinator.book(make_request()).appointment
        finally:
            appointment_created.disconnect(listener)

        assert received == [
            {
                "appointment_id": appointment.id,
                "booking_reference": appointment.booking_reference,
                "total": Decimal("50.00"),
            }
        ]


@pytest.mark.booking
class TestStaffAssignment:
    def test_any_staff_fills_lanes_then_runs_out(self, engine, make_request):
        first = engine.coordinator.book(make_request()).appointment
        second = engine.coordinator.book(make_request()).appointment

        assert (first.staff_id, second.staff_id) == (1, 2)
        with pytest.raises(SlotUnavailable) as exc:
            engine.coordinator.book(make_request())
        assert exc.value.to_dict()["retryable"] is True
        assert exc.value.details["time"] == "10:00"

    def test_buffer_blocks_the_following_slots(self, engine, make_request, sample_service):
        engine.coordinator.book(make_request(staff_id=1))

        alice = open_times(engine, sample_service, staff_id=1)

        assert time(10, 30) not in alice
        assert time(11, 0) not in alice
        assert time(11, 30) in alice

    def test_requested_staff_member(self, engine, make_request):
        appointment = engine.coordinator.book(make_request(staff_id=2)).appointment

        assert appointment.staff_id == 2

    def test_requested_staff_busy(self, engine, make_request):
        engine.coordinator.book(make_request(staff_id=2))

        with pytest.raises(SlotUnavailable):
            engine.coordinator.book(make_request(staff_id=2))

    def test_service_without_staff_uses_the_salon_lane(self, engine, make_request, walk_in_service):
        appointment = engine.coordinator.book(make_request(service_id=walk_in_service.id)).appointment

        assert appointment.staff_id is None
        with pytest.raises(SlotUnavailable):
            engine.coordinator.book(make_request(service_id=walk_in_service.id))
        assert time(10, 30) in open_times(engine, walk_in_service)


@pytest.mark.booking
class TestBookingValidation:
    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"appointment_time": time(10, 10)}, "30-minute"),
            ({"appointment_time": time(17, 30)}, "closing time"),
            ({"appointment_time": time(8, 30)}, "30-minute"),
            ({"appointment_date": date(2026, 11, 1)}, "in the past"),
            ({"appointment_date": date(2026, 11, 8)}, "closed on Sundays"),
            ({"appointment_date": date(2026, 11, 7), "appointment_time": time(16, 30)}, "closing time"),
        ],
    )
    def test_slot_shape_is_checked(self, engine, make_request, overrides, message):
        with pytest.raises(ValidationError) as exc:
            engine.coordinator.book(make_request(**overrides))

        assert message in exc.value.message

    def test_unknown_service(self, engine, make_request):
        with pytest.raises(NotFound):
            engine.coordinator.book(make_request(service_id=404))

    def test_inactive_service(self, engine, make_request, sample_service, db_session):
        sample_service.is_active = False
        db_session.commit()

        with pytest.raises(ValidationError):
            engine.coordinator.book(make_request())

    def test_inactive_payment_method(self, engine, make_request, payment_methods):
        with pytest.raises(ValidationError):
            engine.coordinator.book(make_request(payment_method_id=payment_methods["wallet"].id))

    def test_unknown_payment_method(self, engine, make_request):
        with pytest.raises(NotFound):
            engine.coordinator.book(make_request(payment_method_id=404))

    def test_transfer_needs_a_reference(self, engine, make_request, payment_methods):
        with pytest.raises(ValidationError) as exc:
            engine.coordinator.book(make_request(payment_method_id=payment_methods["transfer"].id))

        assert "reference" in exc.value.message

    def test_transfer_reference_is_stored(self, engine, make_request, payment_methods):
        appointment = engine.coordinator.book(
            make_request(payment_method_id=payment_methods["transfer"].id, payment_reference="TRX-1001")
        ).appointment

        assert appointment.payment.reference == "TRX-1001"
        assert appointment.status == AppointmentStatus.CONFIRMED

    def test_reused_reference_rolls_back_and_releases(
        self, engine, make_request, payment_methods, sample_service, db_session
    ):
        transfer = payment_methods["transfer"].id
        engine.coordinator.book(make_request(payment_method_id=transfer, payment_reference="TRX-1001"))

        with pytest.raises(ValidationError) as exc:
            engine.coordinator.book(
                make_request(
                    payment_method_id=transfer,
                    payment_reference="TRX-1001",
                    appointment_time=time(14, 0),
                )
            )

        assert "already been used" in exc.value.message
        assert open_times(engine, sample_service)[time(14, 0)] == (1, 2)
        assert len(live_reservations(db_session)) == 1
        assert len(db_session.scalars(select(Appointment)).all()) == 1

    def test_staff_who_does_not_offer_the_service(self, engine, make_request):
        with pytest.raises(ValidationError):
            engine.coordinator.book(make_request(staff_id=3))

    def test_reward_of_another_customer(self, engine, make_request, sample_reward):
        with pytest.raises(ValidationError):
            engine.coordinator.book(make_request(reward_id=sample_reward.id, customer_id=OTHER_CUSTOMER_ID))

    def test_expired_reward(self, engine, make_request, sample_reward, db_session):
        sample_reward.expires_at = NOW - timedelta(days=1)
        db_session.commit()

        with pytest.raises(ValidationError):
            engine.coordinator.book(make_request(reward_id=sample_reward.id))

    def test_reward_cannot_be_used_twice(self, engine, make_request, sample_reward):
        engine.coordinator.book(make_request(reward_id=sample_reward.id))

        with pytest.raises(ValidationError):
            engine.coordinator.book(make_request(reward_id=sample_reward.id, appointment_time=time(14, 0)))

    def test_rejections_have_no_side_effects(self, engine, make_request, db_session, card_gateway):
        with pytest.raises(ValidationError):
            engine.coordinator.book(make_request(appointment_time=time(10, 10)))

        assert live_reservations(db_session) == []
        assert db_session.scalars(select(Appointment)).all() == []
        assert card_gateway.initialized == []


@pytest.mark.booking
class TestGatewayFailure:
    def test_declined_hand_off_undoes_everything(
        self, engine, make_request, payment_methods, sample_reward, sample_service, card_gateway, db_session
    ):
        card_gateway.fail_with = "Card processor rejected the request"

        with pytest.raises(PaymentInitiationFailed) as exc:
            engine.coordinator.book(
                make_request(payment_method_id=payment_methods["card"].id, reward_id=sample_reward.id)
            )

        appointment = by_reference(db_session, exc.value.details["booking_reference"])
        assert exc.value.message == "Card processor rejected the request"
        assert appointment.status == AppointmentStatus.CANCELLED
        assert appointment.cancellation_reason == "payment_initiation_failed"
        assert appointment.payment.status == PaymentStatus.FAILED
        assert db_session.get(Reward, sample_reward.id).status == RewardStatus.AVAILABLE
        assert open_times(engine, sample_service)[time(10, 0)] == (1, 2)
        assert live_reservations(db_session) == []

    def test_gateway_exception_is_a_failed_hand_off(
        self, engine, make_request, payment_methods, card_gateway, db_session
    ):
        card_gateway.raise_with = ConnectionError("connection reset")

        with pytest.raises(PaymentInitiationFailed):
            engine.coordinator.book(make_request(payment_method_id=payment_methods["card"].id))

        assert live_reservations(db_session) == []

    def test_slot_can_be_booked_again_after_failure(self, engine, make_request, payment_methods, card_gateway):
        card_gateway.fail_with = "Declined"
        with pytest.raises(PaymentInitiationFailed):
            engine.coordinator.book(make_request(payment_method_id=payment_methods["card"].id, staff_id=1))

        card_gateway.fail_with = None
        outcome = engine.coordinator.book(make_request(payment_method_id=payment_methods["card"].id, staff_id=1))

        assert outcome.appointment.status == AppointmentStatus.PENDING


@pytest.mark.payments
class TestPaymentResults:
    @pytest.fixture
    def pending(self, engine, make_request, payment_methods, sample_reward):
        request = make_request(payment_method_id=payment_methods["card"].id, reward_id=sample_reward.id)
        return engine.coordinator.book(request).appointment

    def test_success_confirms_and_marks_paid(self, engine, pending):
        appointment = engine.coordinator.handle_payment_result(
            pending.booking_reference, True, {"event": "charge.success"}
        )

        assert appointment.status == AppointmentStatus.CONFIRMED
        assert appointment.payment.status == PaymentStatus.PAID
        assert appointment.payment.paid_at == NOW
        assert appointment.payment.gateway_response == {"event": "charge.success"}

    def test_repeated_success_is_a_no_op(self, engine, pending, db_session):
        engine.coordinator.handle_payment_result(pending.booking_reference, True)
        engine.coordinator.handle_payment_result(pending.booking_reference, True)

        confirmations = [
            row for row in pending.status_log if row.to_status == "confirmed"
        ]
        assert len(confirmations) == 1

    def test_failure_cancels_and_restores_reward(self, engine, pending, sample_reward, db_session):
        appointment = engine.coordinator.handle_payment_result(pending.booking_reference, False)

        assert appointment.status == AppointmentStatus.CANCELLED
        assert appointment.payment.status == PaymentStatus.FAILED
        assert appointment.cancellation_reason == "payment_failed"
        assert db_session.get(Reward, sample_reward.id).status == RewardStatus.AVAILABLE

    def test_success_after_cancellation_leaves_it_cancelled(self, engine, pending):
        engine.state_machine.transition(pending.id, AppointmentStatus.CANCELLED, CUSTOMER)

        appointment = engine.coordinator.handle_payment_result(pending.booking_reference, True)

        assert appointment.status == AppointmentStatus.CANCELLED
        assert appointment.payment.status == PaymentStatus.PENDING

    def test_unknown_reference(self, engine, app):
        with pytest.raises(NotFound):
            engine.coordinator.handle_payment_result("BK-NOPE", True)

    def test_confirm_from_gateway_uses_verification(self, engine, pending, card_gateway):
        card_gateway.verify_success = False

        appointment = engine.coordinator.confirm_from_gateway(pending.booking_reference)

        assert appointment.status == AppointmentStatus.CANCELLED
        assert appointment.payment.gateway_response == {"data": {"status": "failed"}}

    def test_verified_amount_must_match_the_total(self, engine, pending, card_gateway):
        card_gateway.verify_amount = Decimal("0.01")

        appointment = engine.coordinator.confirm_from_gateway(pending.booking_reference)

        assert appointment.status == AppointmentStatus.CANCELLED
        assert appointment.payment.status == PaymentStatus.FAILED

    def test_verified_full_amount_confirms(self, engine, pending, card_gateway):
        card_gateway.verify_amount = pending.payment.amount

        appointment = engine.coordinator.confirm_from_gateway(pending.booking_reference)

        assert appointment.status == AppointmentStatus.CONFIRMED
        assert appointment.payment.status == PaymentStatus.PAID

    def test_reported_amount_mismatch_on_a_webhook(self, engine, pending):
        appointment = engine.coordinator.handle_payment_result(
            pending.booking_reference, True, paid_amount=pending.payment.amount + 1
        )

        assert appointment.status == AppointmentStatus.CANCELLED
        assert appointment.cancellation_reason == "payment_failed"


@pytest.mark.payments
class TestMarkPaid:
    def test_staff_marks_cash_payment(self, engine, make_request):
        appointment = engine.coordinator.book(make_request()).appointment

        payment = engine.coordinator.mark_paid(appointment.payment.id, STAFF)

        assert payment.status == PaymentStatus.PAID
        assert payment.paid_at == NOW
        # idempotent
        assert engine.coordinator.mark_paid(payment.id, STAFF).status == PaymentStatus.PAID

    def test_customers_cannot_mark_paid(self, engine, make_request):
        appointment = engine.coordinator.book(make_request()).appointment

        with pytest.raises(ValidationError):
            engine.coordinator.mark_paid(appointment.payment.id, CUSTOMER)

    def test_failed_payment_cannot_be_marked_paid(self, engine, make_request, payment_methods, card_gateway, db_session):
        card_gateway.fail_with = "Declined"
        with pytest.raises(PaymentInitiationFailed) as exc:
            engine.coordinator.book(make_request(payment_method_id=payment_methods["card"].id))
        payment = by_reference(db_session, exc.value.details["booking_reference"]).payment

        with pytest.raises(ValidationError):
            engine.coordinator.mark_paid(payment.id, STAFF)

    def test_unknown_payment(self, engine, app):
        with pytest.raises(NotFound):
            engine.coordinator.mark_paid(404, STAFF)


@pytest.mark.booking
class TestReschedule:
    @pytest.fixture
    def booked(self, engine, make_request):
        return engine.coordinator.book(make_request()).appointment

    def test_move_to_a_free_slot(self, engine, booked, sample_service, db_session):
        moved = engine.coordinator.reschedule(booked.id, BOOKING_DAY, time(14, 0), CUSTOMER)

        assert moved.appointment_time == time(14, 0)
        assert moved.status == AppointmentStatus.CONFIRMED
        assert moved.staff_id == 1
        alice = open_times(engine, sample_service, staff_id=1)
        assert time(10, 0) in alice
        assert time(14, 0) not in alice
        assert len(live_reservations(db_session)) == 1

        last = db_session.scalars(
            select(AppointmentStatusLog).order_by(AppointmentStatusLog.id.desc()).limit(1)
        ).one()
        assert last.reason == "rescheduled"
        assert last.details == {"from": "2026-11-05T10:00:00", "to": "2026-11-05T14:00:00"}

    def test_move_onto_its_own_range(self, engine, booked):
        moved = engine.coordinator.reschedule(booked.id, BOOKING_DAY, time(10, 30), CUSTOMER)

        assert moved.start_at.time() == time(10, 30)

    def test_move_to_another_day(self, engine, booked, sample_service):
        moved = engine.coordinator.reschedule(booked.id, date(2026, 11, 6), time(10, 0), STAFF)

        assert moved.appointment_date == date(2026, 11, 6)
        assert open_times(engine, sample_service)[time(10, 0)] == (1, 2)

    def test_conflict_keeps_the_original(self, engine, booked, make_request, sample_service):
        engine.coordinator.book(make_request(staff_id=1, appointment_time=time(14, 0)))

        with pytest.raises(SlotUnavailable):
            engine.coordinator.reschedule(booked.id, BOOKING_DAY, time(13, 30), CUSTOMER)

        assert booked.appointment_time == time(10, 0)
        assert time(10, 0) not in open_times(engine, sample_service, staff_id=1)

    def test_inside_window_customer_cannot_reschedule(self, engine, make_request, clock):
        appointment = engine.coordinator.book(
            make_request(appointment_date=TOMORROW, appointment_time=time(9, 0))
        ).appointment
        clock.advance(hours=2)

        with pytest.raises(ValidationError):
            engine.coordinator.reschedule(appointment.id, BOOKING_DAY, time(14, 0), CUSTOMER)

        moved = engine.coordinator.reschedule(appointment.id, BOOKING_DAY, time(14, 0), STAFF)
        assert moved.appointment_date == BOOKING_DAY

    def test_failed_move_keeps_the_original_reservation(
        self, engine, booked, sample_service, db_session
    ):
        def refuse_reschedule_log(session, flush_context, instances):
            if any(
                isinstance(obj, AppointmentStatusLog) and obj.reason == "rescheduled"
                for obj in session.new
            ):
                raise RuntimeError("disk full")

        event.listen(db_session, "before_flush", refuse_reschedule_log)
        try:
            with pytest.raises(RuntimeError):
                engine.coordinator.reschedule(booked.id, BOOKING_DAY, time(14, 0), CUSTOMER)
        finally:
            event.remove(db_session, "before_flush", refuse_reschedule_log)

        appointment = db_session.get(Appointment, booked.id)
        assert appointment.appointment_time == time(10, 0)
        assert [r.token for r in live_reservations(db_session)] == [appointment.reservation_token]
        alice = open_times(engine, sample_service, staff_id=1)
        assert time(10, 0) not in alice
        assert time(14, 0) in alice

    def test_cancelled_appointment_cannot_move(self, engine, booked):
        engine.state_machine.transition(booked.id, AppointmentStatus.CANCELLED, CUSTOMER)

        with pytest.raises(InvalidTransition):
            engine.coordinator.reschedule(booked.id, BOOKING_DAY, time(14, 0), CUSTOMER)

    def test_other_customer_cannot_move(self, engine, booked):
        with pytest.raises(NotFound):
            engine.coordinator.reschedule(
                booked.id, BOOKING_DAY, time(14, 0), Actor(Role.CUSTOMER, OTHER_CUSTOMER_ID)
            )

    def test_off_grid_target(self, engine, booked):
        with pytest.raises(ValidationError):
            engine.coordinator.reschedule(booked.id, BOOKING_DAY, time(14, 5), CUSTOMER)

    def test_rescheduled_event(self, engine, booked):
        received = []

        def listener(sender, **payload):
            received.append(payload)

        appointment_rescheduled.connect(listener)
        try:
            engine.coordinator.reschedule(booked.id, BOOKING_DAY, time(15, 0), CUSTOMER)
        finally:
            appointment_rescheduled.disconnect(listener)

        assert received[0]["previous_start"].time() == time(10, 0)
        assert received[0]["start"].time() == time(15, 0)


@pytest.mark.pricing
class TestQuote:
    def test_quote_matches_booking(self, engine, payment_methods, sample_service):
        quote = engine.coordinator.quote(sample_service.id, payment_methods["card"].id)

        assert quote.total == Decimal("51.25")
        assert quote.fee == Decimal("1.25")

    def test_quote_with_reward_and_card_fee(self, engine, payment_methods, sample_service, sample_reward):
        quote = engine.coordinator.quote(
            sample_service.id, payment_methods["card"].id, sample_reward.id, CUSTOMER_ID
        )

        # (50 - 20) * 1.5% + 0.50
        assert quote.total == Decimal("30.95")

    def test_quote_does_not_consume_anything(self, engine, payment_methods, sample_service, sample_reward, db_session):
        engine.coordinator.quote(sample_service.id, payment_methods["cash"].id, sample_reward.id, CUSTOMER_ID)

        assert db_session.get(Reward, sample_reward.id).status == RewardStatus.AVAILABLE
        assert db_session.scalars(select(Payment)).all() == []


@pytest.mark.booking
class TestBookingRequestPayload:
    def test_form_aliases(self):
        request = BookingRequest.from_payload(
            {
                "service_id": "3",
                "date": "2026-11-05",
                "time": "10:00",
                "payment_method_id": 2,
                "message": "Please use the quiet room",
                "email": "ada@example.com",
            },
            customer_id=7,
        )

        assert request.service_id == 3
        assert request.appointment_date == BOOKING_DAY
        assert request.appointment_time == time(10, 0)
        assert request.notes == "Please use the quiet room"
        assert request.customer_email == "ada@example.com"
        assert request.reward_id is None

    def test_missing_fields_are_listed(self):
        with pytest.raises(ValidationError) as exc:
            BookingRequest.from_payload({"service_id": 1}, customer_id=7)

        assert exc.value.details["missing"] == ["payment_method_id", "date", "time"]

    def test_bad_date(self):
        with pytest.raises(ValidationError):
            BookingRequest.from_payload(
                {"service_id": 1, "payment_method_id": 1, "date": "05/11/2026", "time": "10:00"},
                customer_id=7,
            )
