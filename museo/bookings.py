import logging
import uuid
from typing import Iterable, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from museo.config import settings
from museo.db import read_retry
from museo.errors import BookingCancelled, NotFound, PrimaryVisitorMissing, ValidationError
from museo.ledger import check_and_reserve, ensure_window
from museo.models import Booking, RegistrationToken, Visitor, utcnow
from museo.qr import issue_qr
from museo.schemas import BookingCreate, VisitorInfo
from museo.tokens import LEADER_ORDINAL, issue_token, primary_visitor

logger = logging.getLogger(__name__)

SCHEDULED_TYPES = ("individual", "group")
PERSONAL_FIELDS = (
    "first_name", "last_name", "gender", "address", "email",
    "nationality", "visitor_type", "purpose", "institution",
)


def _validate_request(request: BookingCreate) -> int:
    dependents = request.dependents
    declared = request.declared_total if request.declared_total is not None else 1 + len(dependents)

    if declared < 1:
        raise ValidationError("A booking needs at least one visitor.")
    if declared > settings.MAX_VISITORS_PER_BOOKING:
        raise ValidationError(
            f"Maximum {settings.MAX_VISITORS_PER_BOOKING} visitors per booking.",
            declared_total=declared,
        )
    if declared < 1 + len(dependents):
        raise ValidationError("Declared total is smaller than the number of listed visitors.")
    ensure_window(request.window)

    primary = request.primary_visitor
    if not primary.email:
        raise ValidationError("Primary visitor email is required.")
    # walk-in primaries may fill in personal details later through their token
    if request.type in SCHEDULED_TYPES and not primary.has_name:
        raise ValidationError("Primary visitor first and last name are required.")

    if request.type == "individual-walkin" and dependents:
        raise ValidationError("Individual walk-in bookings cannot list companions.")
    for index, dependent in enumerate(dependents, start=1):
        if request.type in SCHEDULED_TYPES and not dependent.email:
            raise ValidationError(f"Companion #{index} needs a contact email.")
        if request.type == "group-walkin" and not (dependent.has_name or dependent.email):
            raise ValidationError(f"Group member #{index} needs a name or a contact email.")
    return declared


def _visitor_from_info(booking_id: str, info: VisitorInfo, **overrides) -> Visitor:
    fields = {name: getattr(info, name) for name in PERSONAL_FIELDS}
    fields.update(overrides)
    return Visitor(id=str(uuid.uuid4()), booking_id=booking_id, created_at=utcnow(), **fields)


def create_booking(db: Session, request: BookingCreate) -> dict:
    """
    Reserve capacity and materialize a booking with its primary visitor.

    Scheduled types (individual, group) get one registration token per
    companion. Group walk-ins materialize named members directly, issue the
    leader token, and park contact-only members until the leader completes.
    An individual walk-in given only a contact email gets a self-registration
    token instead.
    """
    declared = _validate_request(request)
    booking_id = str(uuid.uuid4())
    date = request.date.isoformat()

    if request.type in SCHEDULED_TYPES:
        contacts = [d.email for d in request.dependents]
    elif request.type == "group-walkin":
        contacts = [d.email for d in request.dependents if not d.has_name]
    else:
        contacts = []

    check_and_reserve(db, booking_id, request.type, date, request.window, declared, contacts)

    try:
        booking = db.get(Booking, booking_id)
        walkin = booking.is_walkin

        primary = _visitor_from_info(
            booking_id,
            request.primary_visitor,
            is_primary=True,
            status="approved" if walkin else "pending",
        )
        db.add(primary)
        visitor_ids = [primary.id]
        tokens: List[RegistrationToken] = []

        if request.type == "group-walkin":
            for dependent in request.dependents:
                if not dependent.has_name:
                    continue
                member = _visitor_from_info(
                    booking_id,
                    dependent,
                    is_primary=False,
                    status="approved",
                    institution=primary.institution,
                    purpose=primary.purpose,
                )
                db.add(member)
                issue_qr(member)
                visitor_ids.append(member.id)
            tokens.append(issue_token(db, booking, LEADER_ORDINAL, primary.email))
        elif request.type == "individual-walkin" and not request.primary_visitor.has_name:
            tokens.append(issue_token(db, booking, LEADER_ORDINAL, primary.email))
        elif request.type in SCHEDULED_TYPES:
            for ordinal, email in enumerate(contacts, start=1):
                tokens.append(issue_token(db, booking, ordinal, email))

        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info(
        "Booking %s created: type=%s date=%s window=%s visitors=%s tokens=%s",
        booking_id, request.type, date, request.window, declared, len(tokens),
    )
    return {
        "booking_id": booking_id,
        "primary_visitor_id": primary.id,
        "visitor_ids": visitor_ids,
        "tokens": tokens,
    }


def _load(db: Session, booking_id: str) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found.", booking_id=booking_id)
    return booking


def approve_booking(db: Session, booking_id: str) -> Booking:
    booking = _load(db, booking_id)
    if booking.status == "cancelled":
        raise BookingCancelled("This booking has been cancelled.", booking_id=booking_id)
    if booking.status in ("approved", "checked-in"):
        return booking

    primary = primary_visitor(db, booking_id)
    if primary is None:
        raise PrimaryVisitorMissing("Booking has no primary visitor.", booking_id=booking_id)

    try:
        res = db.execute(
            text("UPDATE bookings SET status = 'approved' WHERE id = :booking_id AND status = 'pending'"),
            {"booking_id": booking_id},
        )
        if res.rowcount != 1:
            # lost a race with another approve or a cancel
            db.rollback()
            db.refresh(booking)
            if booking.status == "cancelled":
                raise BookingCancelled("This booking has been cancelled.", booking_id=booking_id)
            return booking

        if primary.status == "pending":
            primary.status = "approved"
        issue_qr(primary)

        # back-fill tokens that were not created with the booking
        if booking.type == "group-walkin":
            issue_token(db, booking, LEADER_ORDINAL, primary.email)
        elif booking.type == "individual-walkin" and not (primary.first_name and primary.last_name):
            issue_token(db, booking, LEADER_ORDINAL, primary.email)
        elif booking.type in SCHEDULED_TYPES:
            for ordinal, email in enumerate(booking.dependent_contacts or [], start=1):
                issue_token(db, booking, ordinal, email)

        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    db.refresh(booking)
    logger.info("Booking %s approved", booking_id)
    return booking


def cancel_booking(db: Session, booking_id: str, action: str = "cancelled") -> Booking:
    """Cancel a booking. ``action`` only labels the log line ("rejected" is the same transition)."""
    booking = _load(db, booking_id)
    if booking.status == "cancelled":
        return booking
    if booking.status == "checked-in":
        raise ValidationError("A checked-in booking cannot be cancelled.", booking_id=booking_id)

    try:
        res = db.execute(
            text("""
                UPDATE bookings SET status = 'cancelled'
                WHERE id = :booking_id AND status IN ('pending', 'approved')
            """),
            {"booking_id": booking_id},
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    db.refresh(booking)
    if res.rowcount != 1 and booking.status == "checked-in":
        raise ValidationError("A checked-in booking cannot be cancelled.", booking_id=booking_id)
    logger.info("Booking %s %s", booking_id, action)
    return booking


def delete_booking(db: Session, booking_id: str) -> None:
    """Explicit delete; the only path that removes visitors and tokens."""
    _load(db, booking_id)
    try:
        db.query(RegistrationToken).filter(RegistrationToken.booking_id == booking_id).delete(synchronize_session=False)
        db.query(Visitor).filter(Visitor.booking_id == booking_id).delete(synchronize_session=False)
        db.query(Booking).filter(Booking.id == booking_id).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.expire_all()
    logger.info("Booking %s deleted with its visitors and tokens", booking_id)


@read_retry
def get_booking(db: Session, booking_id: str) -> Booking:
    return _load(db, booking_id)


@read_retry
def list_bookings(db: Session, date: Optional[str] = None, status: Optional[str] = None) -> List[Booking]:
    query = db.query(Booking)
    if date:
        query = query.filter(Booking.date == date)
    if status:
        query = query.filter(Booking.status == status)
    return query.order_by(Booking.date.desc(), Booking.time_slot.asc()).all()


def derive_booking_status(current: str, visitor_statuses: Iterable[str]) -> str:
    """A booking is checked-in once every one of its visitors has visited."""
    statuses = list(visitor_statuses)
    if current in ("cancelled", "checked-in"):
        return current
    if statuses and all(s == "visited" for s in statuses):
        return "checked-in"
    return current


def recompute_booking_status(db: Session, booking_id: str) -> str:
    """
    Re-derive the booking status from its visitors inside the caller's
    transaction. Run after every visitor status change; idempotent.
    """
    booking = db.get(Booking, booking_id)
    db.refresh(booking)
    statuses = [
        row[0] for row in db.execute(
            text("SELECT status FROM visitors WHERE booking_id = :booking_id"),
            {"booking_id": booking_id},
        )
    ]
    derived = derive_booking_status(booking.status, statuses)
    if derived != booking.status:
        booking.status = derived
        booking.checkin_time = utcnow()
        logger.info("Booking %s is now %s", booking_id, derived)
    return derived
