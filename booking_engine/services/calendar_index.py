"""
Calendar index: the authoritative record of committed occupancy.

Occupancy is kept per *lane*: a (tenant, staff, date) triple. Staff-less
bookings use the tenant lane, where ``staff_id`` is ``None``. Every committed
range already includes the service's buffer-after time.

``reserve`` is linearizable per lane: the overlap check and the insert run
under the lane's lock, and the SQL backend commits before the lock is
dropped. Contention is scoped to one lane; there is no global lock.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from booking_engine.models import CalendarLane, Reservation

logger = logging.getLogger(__name__)

LaneKey = Tuple[int, Optional[int], date]
TENANT_LANE = 0


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime

    def overlaps(self, other: "TimeRange") -> bool:
        return self.start < other.end and other.start < self.end

    @classmethod
    def starting_at(cls, day: date, start: time, minutes: int) -> "TimeRange":
        begin = datetime.combine(day, start)
        return cls(begin, begin + timedelta(minutes=minutes))


@dataclass(frozen=True)
class ReservationToken:
    token: str
    tenant_id: int
    staff_id: Optional[int]
    day: date
    range: TimeRange


@dataclass(frozen=True)
class Conflict:
    """Normal outcome of ``reserve`` when any part of the range is taken."""

    tenant_id: int
    staff_id: Optional[int]
    requested: TimeRange
    blocking: TimeRange


ReserveResult = Union[ReservationToken, Conflict]


class LaneLocks:
    """One lock per lane, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[LaneKey, threading.Lock] = {}

    def _lock_for(self, key: LaneKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: LaneKey):
        lock = self._lock_for(key)
        with lock:
            yield


def _token_value(token) -> str:
    return token.token if isinstance(token, ReservationToken) else str(token)


class CalendarIndex(ABC):
    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._clock = clock
        self._locks = LaneLocks()

    @abstractmethod
    def reserve(
        self,
        tenant_id: int,
        staff_id: Optional[int],
        day: date,
        start: time,
        duration_minutes: int,
        replacing=None,
    ) -> ReserveResult:
        """
        Commit ``[start, start + duration)`` on the lane unless it overlaps.

        ``replacing`` names a reservation being moved: it is ignored by the
        overlap check but stays live. The caller releases it once the move
        itself is committed.
        """

    @abstractmethod
    def release(self, token) -> bool:
        """Free a reservation. Unknown or already-released tokens are a no-op."""

    @abstractmethod
    def occupancy(
        self, tenant_id: int, staff_ids: Iterable[Optional[int]], day: date
    ) -> Dict[Optional[int], List[TimeRange]]:
        """Read-only snapshot of committed ranges for several lanes on one date."""

    @abstractmethod
    def last_booked(
        self, tenant_id: int, staff_ids: Iterable[int]
    ) -> Dict[int, Optional[datetime]]:
        """When each staff member last received a reservation (None if never)."""


class InMemoryCalendarIndex(CalendarIndex):
    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        super().__init__(clock)
        self._lanes: Dict[LaneKey, Dict[str, TimeRange]] = defaultdict(dict)
        self._token_lanes: Dict[str, LaneKey] = {}
        self._last_booked: Dict[Tuple[int, int], datetime] = {}

    def reserve(self, tenant_id, staff_id, day, start, duration_minutes, replacing=None):
        requested = TimeRange.starting_at(day, start, duration_minutes)
        key = (tenant_id, staff_id, day)
        skip = _token_value(replacing) if replacing is not None else None
        with self._locks.hold(key):
            lane = self._lanes[key]
            for held, existing in lane.items():
                if held != skip and existing.overlaps(requested):
                    logger.info("Lane %s busy at %s", key, existing)
                    return Conflict(tenant_id, staff_id, requested, existing)
            token = str(uuid.uuid4())
            lane[token] = requested
            self._token_lanes[token] = key
            if staff_id is not None:
                self._last_booked[(tenant_id, staff_id)] = self._clock()
        return ReservationToken(token, tenant_id, staff_id, day, requested)

    def release(self, token) -> bool:
        value = _token_value(token)
        key = self._token_lanes.get(value)
        if key is None:
            return False
        with self._locks.hold(key):
            removed = self._lanes[key].pop(value, None)
            self._token_lanes.pop(value, None)
        return removed is not None

    def occupancy(self, tenant_id, staff_ids, day):
        snapshot = {}
        for staff_id in staff_ids:
            key = (tenant_id, staff_id, day)
            with self._locks.hold(key):
                snapshot[staff_id] = sorted(
                    self._lanes.get(key, {}).values(), key=lambda r: r.start
                )
        return snapshot

    def last_booked(self, tenant_id, staff_ids):
        return {sid: self._last_booked.get((tenant_id, sid)) for sid in staff_ids}


class SqlCalendarIndex(CalendarIndex):
    """
    Reservation-table backed index.

    ``reserve`` commits its own transaction before the lane lock is released,
    so it must be called with no unrelated pending writes in the session.
    ``release`` joins the caller's transaction; the caller commits.

    Within one process the lane lock serialises reservers. Across processes
    each reserver first bumps the lane's ``calendar_lane`` row, which holds a
    write lock on it (staff and tenant lanes alike) until the commit.
    """

    def __init__(self, session, clock: Callable[[], datetime] = datetime.now):
        super().__init__(clock)
        self._session = session

    def _claim_lane(self, tenant_id, staff_id):
        session = self._session
        lane = staff_id if staff_id is not None else TENANT_LANE
        bump = (
            update(CalendarLane)
            .where(CalendarLane.tenant_id == tenant_id)
            .where(CalendarLane.lane == lane)
            .values(version=CalendarLane.version + 1)
            .execution_options(synchronize_session=False)
        )
        if session.execute(bump).rowcount:
            return
        session.add(CalendarLane(tenant_id=tenant_id, lane=lane, version=1))
        try:
            session.flush()
        except IntegrityError:
            # Another reserver created the row first; wait on its lock instead
            session.rollback()
            session.execute(bump)

    @staticmethod
    def _lane_filter(tenant_id, staff_id, day):
        clauses = [
            Reservation.tenant_id == tenant_id,
            Reservation.date == day,
            Reservation.released_at.is_(None),
        ]
        if staff_id is None:
            clauses.append(Reservation.staff_id.is_(None))
        else:
            clauses.append(Reservation.staff_id == staff_id)
        return clauses

    def reserve(self, tenant_id, staff_id, day, start, duration_minutes, replacing=None):
        session = self._session
        requested = TimeRange.starting_at(day, start, duration_minutes)
        with self._locks.hold((tenant_id, staff_id, day)):
            try:
                self._claim_lane(tenant_id, staff_id)
                query = (
                    select(Reservation)
                    .where(*self._lane_filter(tenant_id, staff_id, day))
                    .where(Reservation.start_at < requested.end)
                    .where(Reservation.end_at > requested.start)
                )
                if replacing is not None:
                    query = query.where(Reservation.token != _token_value(replacing))
                blocking = session.scalars(
                    query.order_by(Reservation.start_at).limit(1)
                ).first()
                if blocking is not None:
                    logger.info(
                        "Reservation conflict on staff %s %s: %s-%s",
                        staff_id,
                        day,
                        blocking.start_at.time(),
                        blocking.end_at.time(),
                    )
                    conflict = Conflict(
                        tenant_id,
                        staff_id,
                        requested,
                        TimeRange(blocking.start_at, blocking.end_at),
                    )
                    session.commit()
                    return conflict

                token = str(uuid.uuid4())
                reservation = Reservation(
                    token=token,
                    tenant_id=tenant_id,
                    staff_id=staff_id,
                    date=day,
                    start_at=requested.start,
                    end_at=requested.end,
                    created_at=self._clock(),
                )
                session.add(reservation)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return ReservationToken(token, tenant_id, staff_id, day, requested)

    def release(self, token) -> bool:
        result = self._session.execute(
            update(Reservation)
            .where(Reservation.token == _token_value(token))
            .where(Reservation.released_at.is_(None))
            .values(released_at=self._clock())
        )
        return result.rowcount > 0

    def occupancy(self, tenant_id, staff_ids, day):
        staff_ids = list(staff_ids)
        snapshot = {sid: [] for sid in staff_ids}
        if not staff_ids:
            return snapshot

        named = [sid for sid in staff_ids if sid is not None]
        lane_clauses = []
        if named:
            lane_clauses.append(Reservation.staff_id.in_(named))
        if None in snapshot:
            lane_clauses.append(Reservation.staff_id.is_(None))

        rows = self._session.execute(
            select(Reservation.staff_id, Reservation.start_at, Reservation.end_at)
            .where(Reservation.tenant_id == tenant_id)
            .where(Reservation.date == day)
            .where(Reservation.released_at.is_(None))
            .where(or_(*lane_clauses))
            .order_by(Reservation.start_at)
        ).all()
        for staff_id, start_at, end_at in rows:
            snapshot[staff_id].append(TimeRange(start_at, end_at))
        return snapshot

    def last_booked(self, tenant_id, staff_ids):
        staff_ids = list(staff_ids)
        result = {sid: None for sid in staff_ids}
        if not staff_ids:
            return result
        rows = self._session.execute(
            select(Reservation.staff_id, func.max(Reservation.created_at))
            .where(Reservation.tenant_id == tenant_id)
            .where(Reservation.staff_id.in_(staff_ids))
            .group_by(Reservation.staff_id)
        ).all()
        for staff_id, latest in rows:
            result[staff_id] = latest
        return result
