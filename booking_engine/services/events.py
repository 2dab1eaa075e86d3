"""
Appointment events for reporting and notification listeners.

Listeners connect with ``appointment_status_changed.connect(fn)``. Emission
is fire-and-forget: a failing receiver is logged and never reaches the
booking flow.
"""

import logging

from blinker import Namespace

logger = logging.getLogger(__name__)

booking_signals = Namespace()

appointment_created = booking_signals.signal("appointment-created")
appointment_status_changed = booking_signals.signal("appointment-status-changed")
appointment_rescheduled = booking_signals.signal("appointment-rescheduled")


def emit(signal, sender, **payload):
    delivered = 0
    for receiver in list(signal.receivers_for(sender)):
        try:
            receiver(sender, **payload)
            delivered += 1
        except Exception as e:
            logger.error(f"Listener {receiver!r} failed on {signal.name}: {e}")
    return delivered
