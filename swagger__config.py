"""
Swagger/OpenAPI configuration for the Salon Booking Engine API
"""

SWAGGER_CONFIG = {
    "headers": [],
    "specs": [
        {
            "endpoint": "apispec",
            "route": "/apispec.json",
            "rule_filter": lambda rule: True,
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/api/docs",
}

SWAGGER_TEMPLATE = {
    "swagger": "2.0",
    "info": {
        "title": "Salon Booking Engine API",
        "description": "Slot availability, pricing, booking, payment hand-off and appointment lifecycle",
        "contact": {"email": "support@salonapp.com"},
        "version": "1.0.0",
    },
    "host": "",
    "basePath": "/",
    "schemes": ["http", "https"],
    "securityDefinitions": {
        "ActorRole": {
            "type": "apiKey",
            "name": "X-Actor-Role",
            "in": "header",
            "description": "Role forwarded by the auth layer: customer, staff, admin or system",
        },
        "ActorId": {
            "type": "apiKey",
            "name": "X-Actor-Id",
            "in": "header",
            "description": "Id of the customer or staff member making the request",
        },
    },
    "security": [{"ActorRole": [], "ActorId": []}],
    "tags": [
        {"name": "Availability", "description": "Bookable time slots"},
        {"name": "Booking", "description": "Quotes, bookings and appointment lifecycle"},
        {"name": "Payments", "description": "Gateway callbacks, webhooks and offline payments"},
        {"name": "Utility", "description": "Service status"},
    ],
    "definitions": {
        "Error": {
            "type": "object",
            "properties": {
                "success": {"type": "boolean", "example": False},
                "error": {"type": "string", "example": "slot_unavailable"},
                "message": {"type": "string"},
                "retryable": {"type": "boolean"},
            },
        },
        "PriceBreakdown": {
            "type": "object",
            "properties": {
                "base_amount": {"type": "number", "format": "float"},
                "discount": {"type": "number", "format": "float"},
                "reward_applied": {"type": "number", "format": "float"},
                "reward_forfeited": {"type": "number", "format": "float"},
                "subtotal": {"type": "number", "format": "float"},
                "fee": {"type": "number", "format": "float"},
                "total_amount": {"type": "number", "format": "float"},
            },
        },
        "Appointment": {
            "type": "object",
            "properties": {
                "id": {"type": "integer"},
                "booking_reference": {"type": "string", "example": "BK-1A2B3C4D"},
                "service_id": {"type": "integer"},
                "staff_id": {"type": "integer"},
                "customer_id": {"type": "integer"},
                "appointment_date": {"type": "string", "format": "date"},
                "appointment_time": {"type": "string", "example": "10:30"},
                "status": {
                    "type": "string",
                    "enum": [
                        "pending",
                        "confirmed",
                        "in_progress",
                        "completed",
                        "cancelled",
                        "no_show",
                    ],
                },
                "total_price": {"type": "number", "format": "float"},
                "payment_status": {"type": "string"},
            },
        },
    },
}
