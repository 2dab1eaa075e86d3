"""
Booking configuration snapshot.

The engine never reads ``app.config`` directly; the app factory builds a
``BookingSettings`` once and hands it to every component.
"""

from dataclasses import dataclass
from datetime import time
from typing import Mapping, Optional, Tuple

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

Hours = Tuple[time, time]
WeekdayHours = Tuple[Tuple[int, Optional[Hours]], ...]

# Saturday closes early, Sunday is closed
DEFAULT_WEEKDAY_HOURS = "sat=09:00-17:00,sun=closed"


def _parse_time(value) -> time:
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value))


def parse_weekday_hours(value) -> WeekdayHours:
    """
    Parse ``"sat=09:00-17:00,sun=closed"`` into ``((5, (09:00, 17:00)), (6, None))``.

    Weekdays follow ``date.weekday()`` (Monday is 0). Days not listed keep the
    default opening hours.
    """
    if not isinstance(value, str):
        return tuple(value or ())

    entries = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        name, _, hours = part.partition("=")
        name = name.strip().lower()[:3]
        if name not in WEEKDAYS:
            raise ValueError(f"Unknown weekday in business hours: {part!r}")
        hours = hours.strip().lower()
        if hours == "closed":
            entries.append((WEEKDAYS.index(name), None))
            continue
        opens, _, closes = hours.partition("-")
        entries.append(
            (WEEKDAYS.index(name), (_parse_time(opens.strip()), _parse_time(closes.strip())))
        )
    return tuple(entries)


@dataclass(frozen=True)
class BookingSettings:
    """
    Attributes:
        open_time: first candidate start on a day with default hours
        close_time: nothing may end (service duration) after this on such a day
        weekday_hours: per-weekday overrides, ``None`` meaning closed
        slot_step_minutes: candidate grid step (15 / 20 / 30 / 60)
        pending_grace_minutes: unpaid pending appointments older than this are swept
        cancellation_window_hours: customer refund / reschedule cutoff
        gateway_timeout: seconds allowed for the payment hand-off
    """

    open_time: time = time(9, 0)
    close_time: time = time(18, 0)
    weekday_hours: WeekdayHours = ()
    slot_step_minutes: int = 30
    pending_grace_minutes: int = 30
    cancellation_window_hours: int = 24
    gateway_timeout: float = 10.0
    paystack_secret_key: Optional[str] = None
    paystack_base_url: str = "https://api.paystack.co"
    payment_callback_url: Optional[str] = None

    def __post_init__(self):
        if self.slot_step_minutes <= 0 or 60 % self.slot_step_minutes != 0:
            raise ValueError(
                f"slot_step_minutes must divide an hour, got {self.slot_step_minutes}"
            )
        if self.open_time >= self.close_time:
            raise ValueError("open_time must be before close_time")
        for weekday, hours in self.weekday_hours:
            if not 0 <= weekday <= 6:
                raise ValueError(f"weekday must be 0-6, got {weekday}")
            if hours is not None and hours[0] >= hours[1]:
                raise ValueError(f"{WEEKDAYS[weekday]} opens after it closes")
        if self.pending_grace_minutes <= 0:
            raise ValueError("pending_grace_minutes must be positive")

    @classmethod
    def from_config(cls, config: Mapping) -> "BookingSettings":
        return cls(
            open_time=_parse_time(config.get("BUSINESS_OPEN_TIME", "09:00")),
            close_time=_parse_time(config.get("BUSINESS_CLOSE_TIME", "18:00")),
            weekday_hours=parse_weekday_hours(
                config.get("BUSINESS_WEEKDAY_HOURS", DEFAULT_WEEKDAY_HOURS)
            ),
            slot_step_minutes=int(config.get("SLOT_STEP_MINUTES", 30)),
            pending_grace_minutes=int(config.get("PENDING_GRACE_MINUTES", 30)),
            cancellation_window_hours=int(config.get("CANCELLATION_WINDOW_HOURS", 24)),
            gateway_timeout=float(config.get("PAYMENT_GATEWAY_TIMEOUT", 10.0)),
            paystack_secret_key=config.get("PAYSTACK_SECRET_KEY"),
            paystack_base_url=config.get("PAYSTACK_BASE_URL", "https://api.paystack.co"),
            payment_callback_url=config.get("PAYMENT_CALLBACK_URL"),
        )

    def hours_on(self, weekday: int) -> Optional[Hours]:
        """Opening hours for a weekday, or ``None`` when closed."""
        for day, hours in self.weekday_hours:
            if day == weekday:
                return hours
        return (self.open_time, self.close_time)

    def is_on_grid(self, start: time, opening: Optional[time] = None) -> bool:
        opening = opening or self.open_time
        offset = (start.hour * 60 + start.minute) - (opening.hour * 60 + opening.minute)
        return (
            start.second == 0
            and start.microsecond == 0
            and offset >= 0
            and offset % self.slot_step_minutes == 0
        )
