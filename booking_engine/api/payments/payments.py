# Gateway webhook and the staff "mark as paid" flag
import json

from flask import Blueprint, current_app, jsonify, request

from booking_engine.services.engine import get_engine
from booking_engine.services.errors import BookingError, NotFound
from booking_engine.services.payment_gateway import from_minor_units, verify_webhook_signature
from booking_engine.services.state_machine import Role
from booking_engine.utils.http import actor_from_request, error_response, internal_error

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")

HANDLED_EVENTS = {"charge.success": True, "charge.failed": False}


@payments_bp.route("/webhook", methods=["POST"])
def payment_webhook():
    """
    Gateway webhook (HMAC-SHA512 signed)
    ---
    tags:
      - Payments
    parameters:
      - in: header
        name: x-paystack-signature
        type: string
        required: true
    responses:
      200:
        description: Event accepted (or ignored)
      401:
        description: Missing or invalid signature
    """
    engine = get_engine()
    payload = request.get_data()
    signature = request.headers.get("x-paystack-signature")
    if not verify_webhook_signature(engine.settings.paystack_secret_key, payload, signature):
        current_app.logger.warning("Rejected payment webhook with a bad signature")
        return jsonify({"success": False, "error": "invalid_signature"}), 401

    try:
        event = json.loads(payload or b"{}")
    except ValueError:
        event = None
    if not isinstance(event, dict) or not isinstance(event.get("data") or {}, dict):
        return jsonify({"success": False, "error": "invalid_payload"}), 400

    name = event.get("event")
    if name not in HANDLED_EVENTS:
        return jsonify({"success": True, "ignored": name}), 200

    data = event.get("data") or {}
    reference = data.get("reference")
    try:
        paid_amount = from_minor_units(data.get("amount"))
    except ArithmeticError:
        return jsonify({"success": False, "error": "invalid_payload"}), 400

    try:
        appointment = engine.coordinator.handle_payment_result(
            reference, HANDLED_EVENTS[name], event, paid_amount=paid_amount
        )
        return jsonify(
            {
                "success": True,
                "booking_reference": appointment.booking_reference,
                "status": appointment.status.value,
            }
        )
    except NotFound:
        # Unknown reference: acknowledged, nothing to apply
        current_app.logger.warning(f"Webhook for unknown payment reference {reference}")
        return jsonify({"success": True, "ignored": reference}), 200
    except BookingError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(e, "process payment webhook")


@payments_bp.route("/<int:payment_id>/mark-paid", methods=["POST"])
def mark_payment_paid(payment_id):
    """
    Mark a cash (or other offline) payment as collected
    ---
    tags:
      - Payments
    parameters:
      - in: path
        name: payment_id
        type: integer
        required: true
      - in: header
        name: X-Actor-Role
        type: string
        enum: [staff, admin]
    responses:
      200:
        description: Payment marked as paid; appointment status is unchanged
      400:
        description: Not allowed for this actor or payment state
      404:
        description: Payment not found
    """
    try:
        actor = actor_from_request(Role.STAFF)
        payment = get_engine().coordinator.mark_paid(payment_id, actor)
        return jsonify(
            {
                "success": True,
                "payment": {
                    "id": payment.id,
                    "appointment_id": payment.appointment_id,
                    "reference": payment.reference,
                    "amount": float(payment.amount),
                    "status": payment.status.value,
                    "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
                },
            }
        )
    except BookingError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(e, "mark payment as paid")
