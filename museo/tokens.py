import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from museo.config import settings
from museo.db import read_retry
from museo.errors import AlreadySubmitted, BookingCancelled, LinkExpired, NotFound, PrimaryVisitorMissing, VisitError
from museo.models import Booking, RegistrationToken, Visitor, utcnow
from museo.qr import issue_qr
from museo.schemas import TokenCompletion

logger = logging.getLogger(__name__)

# ordinal 0 belongs to the group walk-in leader; companions count from 1
LEADER_ORDINAL = 0

_COMPLETE_SQL = text("""
    UPDATE registration_tokens
    SET status = 'completed', completed_at = :now
    WHERE token_id = :token_id
      AND status = 'pending'
      AND expires_at > :now
      AND EXISTS (
          SELECT 1 FROM bookings b
          WHERE b.id = registration_tokens.booking_id AND b.status != 'cancelled'
      )
""").bindparams(bindparam("now", type_=DateTime))


def token_id_for(booking_id: str, ordinal: int) -> str:
    return f"{booking_id}-{ordinal}"


def is_leader_token(token: RegistrationToken, booking: Booking) -> bool:
    return booking.type == "group-walkin" and token.ordinal == LEADER_ORDINAL


def primary_visitor(db: Session, booking_id: str) -> Optional[Visitor]:
    return (
        db.query(Visitor)
        .filter(Visitor.booking_id == booking_id, Visitor.is_primary.is_(True))
        .first()
    )


def issue_token(
    db: Session,
    booking: Booking,
    ordinal: int,
    email: Optional[str],
    details: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> RegistrationToken:
    """Create the token for (booking, ordinal), or return it if it already exists."""
    token_id = token_id_for(booking.id, ordinal)
    existing = db.get(RegistrationToken, token_id)
    if existing is not None:
        return existing

    now = now or utcnow()
    token = RegistrationToken(
        token_id=token_id,
        booking_id=booking.id,
        ordinal=ordinal,
        email=email,
        status="pending",
        expires_at=now + timedelta(hours=settings.TOKEN_TTL_HOURS),
        details=details,
        created_at=now,
    )
    db.add(token)
    db.flush()
    logger.info("Token %s issued to %s, expires %s", token_id, email, token.expires_at.isoformat())
    return token


def _is_expired(token: RegistrationToken, now: datetime) -> bool:
    return now >= token.expires_at


@read_retry
def fetch_token(db: Session, token_id: str, now: Optional[datetime] = None) -> dict:
    """Token plus the booking context a self-service form needs."""
    now = now or utcnow()
    token = db.get(RegistrationToken, token_id)
    if token is None:
        raise NotFound("Token not found.", token_id=token_id)

    booking = token.booking
    if booking.status == "cancelled":
        raise BookingCancelled("This booking has been cancelled.", booking_id=booking.id)
    if token.status == "pending" and _is_expired(token, now):
        raise LinkExpired(
            "This link has expired. Please contact the museum for assistance.",
            token_id=token_id,
        )

    primary = primary_visitor(db, booking.id)
    return {
        "token_id": token.token_id,
        "booking_id": booking.id,
        "email": token.email,
        "status": token.status,
        "expires_at": token.expires_at,
        "visit_date": booking.date,
        "visit_time": booking.time_slot,
        "booking_type": booking.type,
        "is_group_leader": is_leader_token(token, booking),
        "primary_institution": primary.institution if primary else None,
        "primary_purpose": primary.purpose if primary else None,
        "details": token.details,
    }


def _reject_completion(db: Session, token_id: str, now: datetime) -> VisitError:
    token = db.get(RegistrationToken, token_id)
    if token is None:
        return NotFound("Token not found.", token_id=token_id)
    db.refresh(token)
    if token.booking.status == "cancelled":
        return BookingCancelled("This booking has been cancelled.", booking_id=token.booking_id)
    if token.status != "pending":
        return AlreadySubmitted(
            "This form has already been submitted and cannot be submitted again.",
            token_id=token_id,
        )
    if _is_expired(token, now):
        return LinkExpired(
            "This link has expired. Please contact the museum for assistance.",
            token_id=token_id,
        )
    return AlreadySubmitted("This form is being submitted by another request.", token_id=token_id)


def complete_token(db: Session, token_id: str, fields: TokenCompletion, now: Optional[datetime] = None) -> dict:
    """
    Turn a pending token into exactly one approved visitor with a QR payload.

    The token is claimed with a conditional UPDATE; the visitor insert, QR
    snapshot and (for a group walk-in leader) the member token fan-out share
    its transaction, so either everything lands or nothing does. A walk-in
    primary's own token (ordinal 0) fills in the existing primary visitor.
    """
    now = now or utcnow()
    try:
        res = db.execute(_COMPLETE_SQL, {"token_id": token_id, "now": now})
        if res.rowcount != 1:
            db.rollback()
            error = _reject_completion(db, token_id, now)
            logger.info("Token %s completion rejected: %s", token_id, error.code)
            raise error

        token = db.get(RegistrationToken, token_id)
        db.refresh(token)
        booking = token.booking

        primary = primary_visitor(db, booking.id)
        if primary is None:
            db.rollback()
            logger.warning("Token %s completion rejected: booking %s has no primary visitor", token_id, booking.id)
            raise PrimaryVisitorMissing(
                "The primary visitor for this booking has not been registered yet.",
                booking_id=booking.id,
            )

        leader = is_leader_token(token, booking)
        # ordinal 0 is the walk-in primary registering themselves
        self_registration = token.ordinal == LEADER_ORDINAL
        personal = {
            "first_name": fields.first_name,
            "last_name": fields.last_name,
            "gender": fields.gender,
            "address": fields.address,
            "nationality": fields.nationality,
            "visitor_type": fields.visitor_type,
        }

        if self_registration:
            visitor = primary
            for name, value in personal.items():
                setattr(visitor, name, value)
            if fields.institution is not None:
                visitor.institution = fields.institution
            if fields.purpose is not None:
                visitor.purpose = fields.purpose
        else:
            # institution and purpose always come from the primary visitor
            visitor = Visitor(
                id=str(uuid.uuid4()),
                booking_id=booking.id,
                is_primary=False,
                email=token.email,
                institution=primary.institution,
                purpose=primary.purpose,
                status="approved",
                created_at=now,
                **personal,
            )
            db.add(visitor)
            db.flush()

        payload = issue_qr(visitor)
        token.visitor_id = visitor.id
        token.details = {**personal, "institution": visitor.institution, "purpose": visitor.purpose}

        issued: List[RegistrationToken] = []
        if leader:
            inherited = {
                "group_leader": visitor.full_name,
                "institution": visitor.institution,
                "purpose": visitor.purpose,
            }
            for ordinal, email in enumerate(booking.dependent_contacts or [], start=1):
                issued.append(issue_token(db, booking, ordinal, email, details=dict(inherited), now=now))

        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    if leader:
        logger.info("Leader token %s completed; %s member tokens issued", token_id, len(issued))
    elif self_registration:
        logger.info("Token %s completed as primary visitor %s", token_id, visitor.id)
    else:
        logger.info("Token %s completed as visitor %s", token_id, visitor.id)
    return {"visitor_id": visitor.id, "qr_payload": payload, "issued_tokens": issued}
