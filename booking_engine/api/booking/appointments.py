# Book, pay, cancel, reschedule and move appointments through their lifecycle
import httpx
from flask import Blueprint, current_app, jsonify
from sqlalchemy import select

from booking_engine.extensions import db
from booking_engine.models import Appointment, AppointmentStatus
from booking_engine.services.booking_coordinator import (
    BookingRequest,
    parse_date,
    parse_time,
    serialize_appointment,
)
from booking_engine.services.engine import get_engine
from booking_engine.services.errors import BookingError, NotFound, ValidationError
from booking_engine.services.state_machine import Role, next_statuses
from booking_engine.utils.http import (
    actor_from_request,
    error_response,
    internal_error,
    json_body,
)

appointments_bp = Blueprint("appointments", __name__)


def _find_appointment(id_or_reference) -> Appointment:
    appointment = None
    if str(id_or_reference).isdigit():
        appointment = db.session.get(Appointment, int(id_or_reference))
    else:
        appointment = db.session.scalars(
            select(Appointment).where(
                Appointment.booking_reference == str(id_or_reference).upper()
            )
        ).first()
    if appointment is None:
        raise NotFound(f"Appointment {id_or_reference} not found")
    return appointment


@appointments_bp.route("/api/booking/initialize-payment", methods=["POST"])
def initialize_payment():
    """
    Book a slot and start payment
    ---
    tags:
      - Booking
    parameters:
      - in: header
        name: X-Actor-Id
        type: integer
        required: true
        description: Customer id
      - in: body
        name: body
        required: true
        schema:
          type: object
          required: [service_id, date, time, payment_method_id]
          properties:
            service_id:
              type: integer
            date:
              type: string
              example: "2026-11-02"
            time:
              type: string
              example: "10:30"
            staff_id:
              type: integer
            reward_id:
              type: integer
            payment_method_id:
              type: integer
            payment_reference:
              type: string
              description: Required for methods that need a reference
            message:
              type: string
    responses:
      201:
        description: >
          Appointment created. Card payments return authorization_url and stay
          pending until the gateway reports back; other methods are confirmed.
      400:
        description: Invalid request
      409:
        description: Slot no longer available (retryable)
      502:
        description: Payment could not be initialized; booking rolled back
    """
    try:
        actor = actor_from_request(Role.CUSTOMER)
        if actor.role != Role.CUSTOMER:
            raise ValidationError("Only customers can book appointments")
        booking = BookingRequest.from_payload(json_body(), actor.actor_id)
        outcome = get_engine().coordinator.book(booking)
        return jsonify(outcome.to_dict()), 201
    except BookingError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(e, "create booking")


@appointments_bp.route("/api/booking/payment-callback", methods=["POST"])
def payment_callback():
    """
    Verify a card payment after the gateway redirect
    ---
    tags:
      - Payments
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required: [reference]
          properties:
            reference:
              type: string
    responses:
      200:
        description: Appointment after applying the payment result
      404:
        description: Unknown payment reference
      502:
        description: Gateway could not be reached
    """
    try:
        reference = json_body().get("reference")
        if not reference:
            raise ValidationError("reference is required")
        appointment = get_engine().coordinator.confirm_from_gateway(reference)
        return jsonify({"success": True, "appointment": serialize_appointment(appointment)})
    except BookingError as e:
        return error_response(e)
    except httpx.HTTPError as e:
        current_app.logger.error(f"Payment gateway unreachable: {e}")
        return jsonify({"success": False, "error": "gateway_unavailable", "message": str(e)}), 502
    except Exception as e:
        return internal_error(e, "apply payment result")


@appointments_bp.route("/api/customer/booking/<string:appointment_ref>", methods=["GET"])
def get_booking(appointment_ref):
    """
    Look up one appointment
    ---
    tags:
      - Booking
    parameters:
      - in: path
        name: appointment_ref
        type: string
        required: true
        description: Appointment id or booking reference
      - in: header
        name: X-Actor-Role
        type: string
        enum: [customer, staff, admin]
      - in: header
        name: X-Actor-Id
        type: integer
    responses:
      200:
        description: The appointment with the statuses this actor may move it to
        schema:
          type: object
          properties:
            success:
              type: boolean
            appointment:
              $ref: "#/definitions/Appointment"
      404:
        description: Not found, or booked by another customer
    """
    try:
        actor = actor_from_request(Role.CUSTOMER)
        appointment = _find_appointment(appointment_ref)
        if actor.role == Role.CUSTOMER and appointment.customer_id != actor.actor_id:
            raise NotFound(f"Appointment {appointment_ref} not found")
        data = serialize_appointment(appointment)
        data["allowed_transitions"] = next_statuses(appointment.status, actor.role)
        return jsonify({"success": True, "appointment": data})
    except BookingError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(e, "load booking")


@appointments_bp.route("/api/customer/booking/<string:appointment_ref>/cancel", methods=["PATCH"])
def cancel_booking(appointment_ref):
    """
    Cancel an appointment
    ---
    tags:
      - Booking
    parameters:
      - in: path
        name: appointment_ref
        type: string
        required: true
        description: Appointment id or booking reference
      - in: body
        name: body
        schema:
          type: object
          properties:
            reason:
              type: string
    responses:
      200:
        description: Cancelled; refund decision included
      409:
        description: This appointment can no longer be changed
    """
    try:
        actor = actor_from_request(Role.CUSTOMER)
        appointment = _find_appointment(appointment_ref)
        reason = json_body().get("reason") or f"cancelled_by_{actor.role.value}"
        result = get_engine().state_machine.transition(
            appointment.id, "cancelled", actor, reason=reason
        )
        return jsonify({"success": True, "data": result.to_dict()})
    except BookingError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(e, "cancel booking")


@appointments_bp.route(
    "/api/customer/booking/<string:appointment_ref>/reschedule", methods=["PATCH"]
)
def reschedule_booking(appointment_ref):
    """
    Move a pending or confirmed appointment to another slot
    ---
    tags:
      - Booking
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required: [appointment_date, appointment_time]
          properties:
            appointment_date:
              type: string
            appointment_time:
              type: string
    responses:
      200:
        description: Rescheduled; price is unchanged
      400:
        description: Too close to the appointment or malformed slot
      409:
        description: Slot unavailable, or appointment can no longer be changed
    """
    try:
        actor = actor_from_request(Role.CUSTOMER)
        appointment = _find_appointment(appointment_ref)
        data = json_body()
        new_date = parse_date(
            data.get("appointment_date") or data.get("date"), "appointment_date"
        )
        new_time = parse_time(
            data.get("appointment_time") or data.get("time"), "appointment_time"
        )
        moved = get_engine().coordinator.reschedule(
            appointment.id, new_date, new_time, actor
        )
        return jsonify({"success": True, "appointment": serialize_appointment(moved)})
    except BookingError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(e, "reschedule booking")


@appointments_bp.route("/api/appointments/<int:appointment_id>/status", methods=["PATCH"])
def update_status(appointment_id):
    """
    Staff-driven status change (confirm, start, complete, no-show, cancel)
    ---
    tags:
      - Booking
    parameters:
      - in: header
        name: X-Actor-Role
        type: string
        enum: [staff, admin, system, customer]
      - in: body
        name: body
        required: true
        schema:
          type: object
          required: [status]
          properties:
            status:
              type: string
              enum: [confirmed, in_progress, completed, cancelled, no_show]
            reason:
              type: string
    responses:
      200:
        description: Transition applied
      400:
        description: Unknown status
      409:
        description: Transition not allowed from the current status for this role
    """
    try:
        actor = actor_from_request(Role.STAFF)
        data = json_body()
        status = data.get("status")
        if not status:
            raise ValidationError("status is required")
        try:
            target = AppointmentStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown status '{status}'")
        result = get_engine().state_machine.transition(
            appointment_id, target, actor, reason=data.get("reason")
        )
        return jsonify({"success": True, "data": result.to_dict()})
    except BookingError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(e, "update appointment status")


@appointments_bp.route("/api/customer/cancellation-policy", methods=["GET"])
def cancellation_policy():
    """
    Cancellation and reschedule policy
    ---
    tags:
      - Booking
    responses:
      200:
        description: Refund window and the policy wording shown to customers
        schema:
          type: object
          properties:
            success:
              type: boolean
            data:
              type: object
              properties:
                cancellation_window:
                  type: integer
                  description: Hours before the start time
                refund_eligible:
                  type: array
                  items:
                    type: string
                non_refundable:
                  type: array
                  items:
                    type: string
                policy_text:
                  type: string
                reschedule_window:
                  type: integer
                reschedule_policy:
                  type: string
    """
    return jsonify({"success": True, "data": get_engine().policy.summary()})
