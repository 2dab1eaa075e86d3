# Slot listing and price quotes (read-only)
from flask import Blueprint, jsonify, request

from booking_engine.extensions import db
from booking_engine.models import Service
from booking_engine.services.booking_coordinator import parse_date
from booking_engine.services.engine import get_engine
from booking_engine.services.errors import BookingError, NotFound, ValidationError
from booking_engine.utils.http import error_response, internal_error, json_body

availability_bp = Blueprint("availability", __name__)


def _int_arg(value, name, required=True):
    if value in (None, ""):
        if required:
            raise ValidationError(f"{name} is required")
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


@availability_bp.route("/api/public/available-slots", methods=["GET"])
def get_available_slots():
    """
    List bookable start times for a service on a date
    ---
    tags:
      - Availability
    parameters:
      - in: query
        name: service_id
        type: integer
        required: true
      - in: query
        name: date
        type: string
        format: date
        required: true
        description: YYYY-MM-DD
      - in: query
        name: staff_id
        type: integer
        required: false
        description: Only this staff member's calendar is checked
    responses:
      200:
        description: Available slots (possibly empty)
        schema:
          type: object
          properties:
            success:
              type: boolean
            data:
              type: object
              properties:
                date:
                  type: string
                service_id:
                  type: integer
                is_open:
                  type: boolean
                  description: False on days the salon is closed
                available_slots:
                  type: array
                  items:
                    type: object
                    properties:
                      time:
                        type: string
                        example: "09:30"
                      duration_minutes:
                        type: integer
                      staff_ids:
                        type: array
                        items:
                          type: integer
      400:
        description: Missing or malformed query parameters
      404:
        description: Service not found
    """
    try:
        service_id = _int_arg(request.args.get("service_id"), "service_id")
        day = parse_date(request.args.get("date"))
        staff_id = _int_arg(request.args.get("staff_id"), "staff_id", required=False)

        service = db.session.get(Service, service_id)
        if service is None:
            raise NotFound(f"Service {service_id} not found")

        resolver = get_engine().resolver
        slots = resolver.available_slots(service, day, staff_id)
        return jsonify(
            {
                "success": True,
                "data": {
                    "date": day.isoformat(),
                    "service_id": service.id,
                    "is_open": resolver.opening_hours(service.tenant_id, day) is not None,
                    "available_slots": [slot.to_dict() for slot in slots],
                },
            }
        )
    except BookingError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(e, "list available slots")


@availability_bp.route("/api/booking/quote", methods=["POST"])
def quote_booking():
    """
    Price breakdown for a service, payment method and optional reward
    ---
    tags:
      - Booking
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required: [service_id, payment_method_id]
          properties:
            service_id:
              type: integer
            payment_method_id:
              type: integer
            reward_id:
              type: integer
    responses:
      200:
        description: Price breakdown; nothing is reserved or consumed
      400:
        description: Invalid input or unusable reward
      404:
        description: Unknown service, payment method or reward
    """
    try:
        data = json_body()
        customer_id = _int_arg(
            data.get("customer_id") or request.headers.get("X-Actor-Id"),
            "customer_id",
            required=False,
        )
        breakdown = get_engine().coordinator.quote(
            _int_arg(data.get("service_id"), "service_id"),
            _int_arg(data.get("payment_method_id"), "payment_method_id"),
            reward_id=_int_arg(data.get("reward_id"), "reward_id", required=False),
            customer_id=customer_id,
        )
        return jsonify({"success": True, "data": breakdown.to_dict()})
    except BookingError as e:
        return error_response(e)
    except Exception as e:
        return internal_error(e, "quote booking")
