import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from museo import qr
from museo.bookings import recompute_booking_status
from museo.errors import AlreadyCheckedIn, AlreadyUsed, BookingCancelled, NotFound, ValidationError, VisitError
from museo.models import Visitor, utcnow

logger = logging.getLogger(__name__)

# approved -> visited, guarded so that only one concurrent scan can win
_CHECKIN_SQL = text("""
    UPDATE visitors
    SET status = 'visited', checkin_time = :now, qr_used = :used
    WHERE id = :visitor_id
      AND status = 'approved'
      AND qr_used = :unused
      AND EXISTS (
          SELECT 1 FROM bookings b
          WHERE b.id = visitors.booking_id AND b.status != 'cancelled'
      )
""").bindparams(bindparam("now", type_=DateTime))


def _rejection(db: Session, visitor_id: str) -> VisitError:
    visitor = db.get(Visitor, visitor_id)
    if visitor is None:
        return NotFound("Visitor not found.", visitor_id=visitor_id)
    db.refresh(visitor)
    if visitor.booking.status == "cancelled":
        return BookingCancelled("This booking has been cancelled and cannot be checked in.", booking_id=visitor.booking_id)
    if visitor.qr_used:
        return AlreadyUsed("This QR code has already been used and cannot be scanned again.", visitor_id=visitor_id)
    if visitor.status == "visited":
        return AlreadyCheckedIn("This visitor has already been checked in.", visitor_id=visitor_id)
    return ValidationError("This visitor has not been approved for check-in yet.", visitor_id=visitor_id)


def check_in(db: Session, visitor_id: str, now: Optional[datetime] = None) -> Visitor:
    """
    Move a visitor from approved to visited and consume their QR code.

    Status, check-in time and qr_used change in one conditional UPDATE; the
    originating token and the booking status follow in the same transaction.
    """
    now = now or utcnow()
    try:
        res = db.execute(_CHECKIN_SQL, {
            "visitor_id": visitor_id,
            "now": now,
            "used": True,
            "unused": False,
        })
        if res.rowcount != 1:
            db.rollback()
            error = _rejection(db, visitor_id)
            logger.info("Check-in of visitor %s rejected: %s", visitor_id, error.code)
            raise error

        db.execute(
            text("""
                UPDATE registration_tokens SET status = 'checked_in'
                WHERE visitor_id = :visitor_id AND status = 'completed'
            """),
            {"visitor_id": visitor_id},
        )
        visitor = db.get(Visitor, visitor_id)
        db.refresh(visitor)
        booking_status = recompute_booking_status(db, visitor.booking_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info("Visitor %s checked in (booking %s now %s)", visitor_id, visitor.booking_id, booking_status)
    return visitor


def scan(db: Session, raw: str, now: Optional[datetime] = None) -> Visitor:
    """Decode scanned QR text, validate it and check the visitor in."""
    payload = qr.decode_payload(raw)
    visitor = qr.validate(db, payload)
    visitor_id = visitor.id
    # end the read before the guarded write
    db.commit()
    return check_in(db, visitor_id, now=now)
