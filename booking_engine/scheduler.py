import atexit
import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import select

from booking_engine.extensions import db
from booking_engine.models import Appointment, AppointmentStatus
from booking_engine.services.errors import InvalidTransition
from booking_engine.services.state_machine import Actor

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


def expire_stale_pending(engine, now=None):
    """
    Cancel pending appointments whose payment never arrived.

    Runs each one through the regular ``pending -> cancelled`` transition as
    ``system``, so the slot and any reward are released the same way a
    payment failure would. Returns the ids that were cancelled.
    """
    now = now or engine.clock()
    cutoff = now - timedelta(minutes=engine.settings.pending_grace_minutes)
    stale_ids = db.session.scalars(
        select(Appointment.id)
        .where(Appointment.status == AppointmentStatus.PENDING)
        .where(Appointment.created_at < cutoff)
        .order_by(Appointment.id)
    ).all()

    cancelled = []
    for appointment_id in stale_ids:
        try:
            engine.state_machine.transition(
                appointment_id,
                AppointmentStatus.CANCELLED,
                Actor.system(),
                reason="payment_timeout",
            )
            cancelled.append(appointment_id)
        except InvalidTransition as e:
            logger.info(f"Skipping appointment {appointment_id}: {e}")
    return cancelled


def init_scheduler(app):
    """Start the stale-pending sweep with Flask app context."""
    interval = app.config.get("STALE_PENDING_SWEEP_MINUTES", 5)

    def sweep_stale_pending():
        current_time_str = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        try:
            with app.app_context():
                engine = app.extensions["booking_engine"]
                cancelled = expire_stale_pending(engine)
                if cancelled:
                    logger.info(
                        f"[SCHEDULER] {current_time_str} - Cancelled {len(cancelled)} "
                        "unpaid appointment(s)"
                    )
                else:
                    logger.info(f"[SCHEDULER] {current_time_str} - No stale pending appointments")
        except Exception as e:
            logger.error(
                f"[SCHEDULER] {current_time_str} - Error expiring pending appointments: {e}"
            )
            with app.app_context():
                db.session.rollback()

    scheduler.add_job(
        sweep_stale_pending,
        "interval",
        minutes=interval,
        id="expire_stale_pending",
        replace_existing=True,
    )

    if not scheduler.running:
        scheduler.start()
        logger.info("[SCHEDULER] Scheduler started")
    else:
        logger.info("[SCHEDULER] Scheduler already running (skipping duplicate start)")

    atexit.register(lambda: scheduler.shutdown(wait=False) if scheduler.running else None)
