from flask import current_app, jsonify, request

from booking_engine.extensions import db
from booking_engine.services.errors import BookingError, ValidationError
from booking_engine.services.state_machine import Actor, Role


def error_response(error: BookingError):
    """Typed booking failure -> JSON body with the error's status code."""
    return jsonify(error.to_dict()), error.http_status


def internal_error(e: Exception, action: str):
    db.session.rollback()
    current_app.logger.error(f"Failed to {action}: {e}")
    return jsonify({"error": "Database error", "details": str(e)}), 500


def actor_from_request(default_role: Role = Role.CUSTOMER) -> Actor:
    """
    Actor identity as forwarded by the auth layer.

    X-Actor-Role: customer | staff | admin | system
    X-Actor-Id:   numeric id of the customer or staff member
    """
    raw_role = request.headers.get("X-Actor-Role", default_role.value)
    try:
        role = Role(raw_role.strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown actor role '{raw_role}'")

    raw_id = request.headers.get("X-Actor-Id")
    actor_id = None
    if raw_id:
        try:
            actor_id = int(raw_id)
        except ValueError:
            raise ValidationError("X-Actor-Id must be an integer")
    if role == Role.CUSTOMER and actor_id is None:
        raise ValidationError("X-Actor-Id is required for customers")
    return Actor(role, actor_id)


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data
