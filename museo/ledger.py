import logging
from typing import List, Optional

from sqlalchemy import DateTime, JSON, bindparam, text
from sqlalchemy.orm import Session

from museo.config import settings
from museo.db import dialect_name, read_retry
from museo.errors import CapacityExceeded, ValidationError
from museo.models import utcnow

logger = logging.getLogger(__name__)

_RESERVE_SQL = text("""
    INSERT INTO bookings (id, type, status, date, time_slot, total_visitors, dependent_contacts, created_at)
    SELECT :booking_id, :booking_type, 'pending', :date, :time_slot, :requested, :contacts, :now
    WHERE (
        SELECT COALESCE(SUM(b.total_visitors), 0)
        FROM bookings b
        WHERE b.date = :date
          AND b.time_slot = :time_slot
          AND b.status != 'cancelled'
    ) + :requested <= :capacity
""").bindparams(bindparam("contacts", type_=JSON), bindparam("now", type_=DateTime))


def ensure_window(window: str) -> None:
    if window not in settings.TIME_SLOTS:
        raise ValidationError(f"Unknown time window '{window}'", window=window)


def check_and_reserve(
    db: Session,
    booking_id: str,
    booking_type: str,
    date: str,
    window: str,
    requested: int,
    dependent_contacts: Optional[List[str]] = None,
    capacity: Optional[int] = None,
) -> None:
    """
    Atomically insert a pending booking if the slot still has room.

    The capacity sum and the insert are a single INSERT ... SELECT ... WHERE
    statement so two concurrent requests can never both see the old total.
    Must be the first write of the caller's transaction; the caller commits.
    Raises CapacityExceeded when `current + requested` would exceed capacity.
    """
    ensure_window(window)
    capacity = settings.SLOT_CAPACITY if capacity is None else capacity

    if dialect_name(db) == "postgresql":
        # a single statement is not serialised under READ COMMITTED there
        db.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": f"slot:{date}:{window}"},
        )

    res = db.execute(_RESERVE_SQL, {
        "booking_id": booking_id,
        "booking_type": booking_type,
        "date": date,
        "time_slot": window,
        "requested": requested,
        "contacts": list(dependent_contacts or []),
        "now": utcnow(),
        "capacity": capacity,
    })

    if res.rowcount != 1:
        db.rollback()
        booked = booked_total(db, date, window)
        logger.info(
            "Slot %s %s full: booked=%s requested=%s capacity=%s",
            date, window, booked, requested, capacity,
        )
        raise CapacityExceeded(
            "Slot is full for the requested number of visitors.",
            booked=booked, requested=requested, capacity=capacity,
        )


@read_retry
def booked_total(db: Session, date: str, window: str) -> int:
    row = db.execute(text("""
        SELECT COALESCE(SUM(total_visitors), 0)
        FROM bookings
        WHERE date = :date AND time_slot = :time_slot AND status != 'cancelled'
    """), {"date": date, "time_slot": window}).fetchone()
    return int(row[0] or 0)


@read_retry
def slot_usage(db: Session, date: str) -> List[dict]:
    """Booked-vs-capacity for every configured window on a date."""
    rows = db.execute(text("""
        SELECT time_slot, SUM(total_visitors) AS booked
        FROM bookings
        WHERE date = :date AND status != 'cancelled'
        GROUP BY time_slot
    """), {"date": date}).fetchall()
    booked_by_slot = {r.time_slot: int(r.booked or 0) for r in rows}

    capacity = settings.SLOT_CAPACITY
    results = []
    for window in settings.TIME_SLOTS:
        booked = booked_by_slot.get(window, 0)
        results.append({
            "time": window,
            "booked": booked,
            "capacity": capacity,
            "available": max(capacity - booked, 0),
        })
    return results
