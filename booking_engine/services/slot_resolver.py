"""
Slot resolver: which start times are bookable for a service on a date.

Candidates are laid on a fixed grid from the day's opening time; a candidate
must let the service finish by closing time. A tenant's ``business_hours``
row for the weekday wins over the configured hours, and closed days have no
slots. A candidate's committed range also covers the service's buffer-after
time, and that whole range must be free on at least one eligible lane (or on
the requested staff member's lane).

Results are computed from a single occupancy snapshot per call and are never
persisted. The booking coordinator re-checks before reserving.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import select

from booking_engine.models import BusinessHours, Service, Staff, service_staff
from booking_engine.services.calendar_index import CalendarIndex, TimeRange
from booking_engine.services.settings import BookingSettings, Hours

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeSlot:
    day: date
    start: time
    duration_minutes: int
    staff_ids: tuple

    def to_dict(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "time": self.start.strftime("%H:%M"),
            "duration_minutes": self.duration_minutes,
            "staff_ids": [sid for sid in self.staff_ids if sid is not None],
        }


def committed_minutes(service) -> int:
    return int(service.duration) + int(service.buffer_after or 0)


class SlotResolver:
    def __init__(
        self,
        session,
        calendar: CalendarIndex,
        settings: BookingSettings,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._session = session
        self._calendar = calendar
        self._settings = settings
        self._clock = clock

    def eligible_staff_ids(self, service: Service) -> List[int]:
        stmt = (
            select(Staff.id)
            .join(service_staff, service_staff.c.staff_id == Staff.id)
            .where(service_staff.c.service_id == service.id)
            .where(Staff.tenant_id == service.tenant_id)
            .where(Staff.is_active.is_(True))
            .order_by(Staff.id)
        )
        return list(self._session.scalars(stmt).all())

    def lanes_for(self, service: Service, staff_id: Optional[int] = None) -> List[Optional[int]]:
        """
        Lanes whose occupancy decides availability.

        A requested staff member is the only lane, provided they are eligible.
        Without eligible staff, a service that does not need staff runs on the
        tenant lane (``None``); one that does has no lanes at all.
        """
        eligible = self.eligible_staff_ids(service)
        if staff_id is not None:
            return [staff_id] if staff_id in eligible else []
        if eligible:
            return eligible
        return [] if service.staff_required else [None]

    def opening_hours(self, tenant_id: int, day: date) -> Optional[Hours]:
        row = self._session.scalars(
            select(BusinessHours)
            .where(BusinessHours.tenant_id == tenant_id)
            .where(BusinessHours.weekday == day.weekday())
        ).first()
        if row is None:
            return self._settings.hours_on(day.weekday())
        if not row.is_open:
            return None
        return (
            row.open_time or self._settings.open_time,
            row.close_time or self._settings.close_time,
        )

    def candidate_starts(self, service: Service, day: date) -> List[time]:
        hours = self.opening_hours(service.tenant_id, day)
        if hours is None:
            return []
        step = timedelta(minutes=self._settings.slot_step_minutes)
        duration = timedelta(minutes=int(service.duration))
        current = datetime.combine(day, hours[0])
        closing = datetime.combine(day, hours[1])

        starts = []
        while current < closing:
            if current + duration <= closing:
                starts.append(current.time())
            current += step
        return starts

    def fits_day(self, tenant_id: int, day: date, start: time, duration_minutes: int) -> bool:
        hours = self.opening_hours(tenant_id, day)
        if hours is None or not self._settings.is_on_grid(start, opening=hours[0]):
            return False
        begin = datetime.combine(day, start)
        return begin + timedelta(minutes=duration_minutes) <= datetime.combine(day, hours[1])

    def _free_lanes(
        self,
        lanes: Sequence[Optional[int]],
        occupancy: Dict[Optional[int], List[TimeRange]],
        requested: TimeRange,
    ) -> tuple:
        return tuple(
            lane
            for lane in lanes
            if not any(taken.overlaps(requested) for taken in occupancy.get(lane, []))
        )

    def available_slots(
        self, service: Service, day: date, staff_id: Optional[int] = None
    ) -> List[TimeSlot]:
        now = self._clock()
        if not service.is_active or day < now.date():
            return []

        lanes = self.lanes_for(service, staff_id)
        if not lanes:
            logger.info("No eligible staff for service %s", service.id)
            return []

        occupancy = self._calendar.occupancy(service.tenant_id, lanes, day)
        minutes = committed_minutes(service)

        slots = []
        for start in self.candidate_starts(service, day):
            if datetime.combine(day, start) <= now:
                continue
            requested = TimeRange.starting_at(day, start, minutes)
            free = self._free_lanes(lanes, occupancy, requested)
            if free:
                slots.append(TimeSlot(day, start, int(service.duration), free))
        return slots

    def free_lanes_at(
        self,
        service: Service,
        day: date,
        start: time,
        staff_id: Optional[int] = None,
    ) -> tuple:
        """Fresh check of one exact slot, ordered for assignment."""
        lanes = self.lanes_for(service, staff_id)
        if not lanes or start not in self.candidate_starts(service, day):
            return ()
        occupancy = self._calendar.occupancy(service.tenant_id, lanes, day)
        requested = TimeRange.starting_at(day, start, committed_minutes(service))
        return self.order_for_assignment(
            service.tenant_id, self._free_lanes(lanes, occupancy, requested)
        )

    def order_for_assignment(self, tenant_id: int, lanes: Sequence[Optional[int]]) -> tuple:
        """Least-recently-booked staff first; never-booked before booked; ties by id."""
        named = [lane for lane in lanes if lane is not None]
        if not named:
            return tuple(lanes)
        last = self._calendar.last_booked(tenant_id, named)
        ranked = sorted(
            named,
            key=lambda sid: (last.get(sid) is not None, last.get(sid) or datetime.min, sid),
        )
        return tuple(ranked)
