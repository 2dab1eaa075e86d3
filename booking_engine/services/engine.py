"""
Wires the booking components together for a Flask app.

``init_booking_engine(app)`` builds one ``BookingEngine`` per app and keeps
it in ``app.extensions``; request handlers fetch it with ``get_engine()``.
Components share Flask-SQLAlchemy's scoped session, so each request (or
scheduler job) works in its own session while lane locks are app-wide.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from flask import current_app

from booking_engine.extensions import db
from booking_engine.services.booking_coordinator import BookingCoordinator
from booking_engine.services.calendar_index import CalendarIndex, SqlCalendarIndex
from booking_engine.services.cancellation_policy import CancellationPolicy
from booking_engine.services.payment_gateway import (
    GatewayRegistry,
    PaymentGateway,
    PaystackGateway,
)
from booking_engine.services.settings import BookingSettings
from booking_engine.services.slot_resolver import SlotResolver
from booking_engine.services.state_machine import AppointmentStateMachine

logger = logging.getLogger(__name__)

EXTENSION_KEY = "booking_engine"


@dataclass
class BookingEngine:
    settings: BookingSettings
    calendar: CalendarIndex
    resolver: SlotResolver
    policy: CancellationPolicy
    state_machine: AppointmentStateMachine
    gateways: GatewayRegistry
    coordinator: BookingCoordinator
    clock: Callable[[], datetime]

    @property
    def session(self):
        return db.session


def build_engine(
    settings: BookingSettings,
    session,
    clock: Callable[[], datetime] = datetime.now,
    calendar: Optional[CalendarIndex] = None,
    card_gateway: Optional[PaymentGateway] = None,
) -> BookingEngine:
    calendar = calendar or SqlCalendarIndex(session, clock)
    resolver = SlotResolver(session, calendar, settings, clock)
    policy = CancellationPolicy(settings.cancellation_window_hours)
    state_machine = AppointmentStateMachine(session, calendar, policy, clock)
    gateways = GatewayRegistry(
        card=card_gateway
        or PaystackGateway(
            settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            callback_url=settings.payment_callback_url,
            timeout=settings.gateway_timeout,
        )
    )
    coordinator = BookingCoordinator(
        session, calendar, resolver, state_machine, policy, gateways, settings, clock
    )
    return BookingEngine(
        settings=settings,
        calendar=calendar,
        resolver=resolver,
        policy=policy,
        state_machine=state_machine,
        gateways=gateways,
        coordinator=coordinator,
        clock=clock,
    )


def init_booking_engine(app, clock=None, card_gateway=None) -> BookingEngine:
    settings = BookingSettings.from_config(app.config)
    engine = build_engine(
        settings,
        db.session,
        clock=clock or datetime.now,
        card_gateway=card_gateway,
    )
    app.extensions[EXTENSION_KEY] = engine
    logger.info(
        f"Booking engine ready: {settings.open_time}-{settings.close_time}, "
        f"{settings.slot_step_minutes} min slots"
    )
    return engine


def get_engine() -> BookingEngine:
    return current_app.extensions[EXTENSION_KEY]
