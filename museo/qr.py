"""
QR issuance, decoding, resolution and validation.

A QR payload is an opaque JSON string identifying exactly one visitor. Three
shapes exist:

  - VisitorPayload:      names the visitor directly (everything issued now)
  - TokenPayload:        names a registration token; resolves through the
                         visitor the token produced on completion
  - LegacyEmailPayload:  only the booking id and contact email; resolves to
                         the most recent matching visitor

Codes printed by older releases (``type``-tagged JSON, ``GROUP-...`` ids,
check-in URLs and bare backup codes) are decoded into the same three shapes.
"""
import base64
import json
import logging
import re
from io import BytesIO
from typing import Annotated, Callable, Dict, List, Literal, Optional, Union

import qrcode
from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from qrcode import constants
from sqlalchemy.orm import Session

from museo.db import read_retry
from museo.errors import AlreadyCheckedIn, AlreadyUsed, BookingCancelled, NotFound, ValidationError
from museo.models import RegistrationToken, Visitor

logger = logging.getLogger(__name__)


class VisitorPayload(BaseModel):
    kind: Literal["visitor"] = "visitor"
    visitor_id: str
    booking_id: Optional[str] = None
    email: Optional[str] = None


class TokenPayload(BaseModel):
    kind: Literal["token"] = "token"
    token_id: str
    booking_id: Optional[str] = None
    email: Optional[str] = None


class LegacyEmailPayload(BaseModel):
    kind: Literal["legacy_email"] = "legacy_email"
    booking_id: str
    email: str


QRPayload = Annotated[
    Union[VisitorPayload, TokenPayload, LegacyEmailPayload],
    Field(discriminator="kind"),
]
_payload_adapter = TypeAdapter(QRPayload)

_UUID = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
_TOKEN_ID_RE = re.compile(rf"^{_UUID}-\d+$")
_GROUP_ID_RE = re.compile(rf"^GROUP-(?P<booking>{_UUID})-(?P<token>{_UUID}-\d+)$")

_LEGACY_VISITOR_TYPES = {"primary_visitor", "walkin_visitor", "individual_walkin", "visitor"}


def encode_payload(payload) -> str:
    return payload.model_dump_json(exclude_none=True)


def decode_payload(raw: str):
    """Turn scanned or typed text into one of the three payload shapes."""
    text = (raw or "").strip()
    if not text:
        raise ValidationError("QR data is empty")

    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            raise ValidationError("QR data is not valid JSON")
        if not isinstance(data, dict):
            raise ValidationError("QR data must be a JSON object")
        try:
            return _decode_object(data)
        except PydanticValidationError:
            raise ValidationError("QR data has an unrecognised shape")

    if "/checkin/" in text:
        return VisitorPayload(visitor_id=text.rstrip("/").rsplit("/", 1)[-1])

    # manual backup code: a token id or a visitor id
    if _TOKEN_ID_RE.match(text):
        return TokenPayload(token_id=text)
    match = _GROUP_ID_RE.match(text)
    if match:
        return TokenPayload(token_id=match.group("token"), booking_id=match.group("booking"))
    return VisitorPayload(visitor_id=text)


def _decode_object(data: dict):
    if "kind" in data:
        return _payload_adapter.validate_python(data)

    qr_type = data.get("type")
    booking_id = _str_or_none(data.get("bookingId"))
    email = data.get("email")

    if qr_type in _LEGACY_VISITOR_TYPES and data.get("visitorId") is not None:
        visitor_id = str(data["visitorId"])
        match = _GROUP_ID_RE.match(visitor_id)
        if match:
            return TokenPayload(token_id=match.group("token"), booking_id=booking_id or match.group("booking"), email=email)
        return VisitorPayload(visitor_id=visitor_id, booking_id=booking_id, email=email)

    if qr_type == "additional_visitor" and data.get("tokenId"):
        return TokenPayload(token_id=str(data["tokenId"]), booking_id=booking_id, email=email)

    if booking_id and email:
        return LegacyEmailPayload(booking_id=booking_id, email=email)

    raise ValidationError(f"Unsupported QR code type '{qr_type}'")


def _str_or_none(value) -> Optional[str]:
    return None if value is None else str(value)


def issue_qr(visitor: Visitor) -> str:
    """
    Store a fresh payload snapshot on the visitor and return it.

    Re-issuing overwrites the snapshot; qr_used is never reset here. The
    caller owns the transaction.
    """
    payload = encode_payload(VisitorPayload(
        visitor_id=visitor.id,
        booking_id=visitor.booking_id,
        email=visitor.email,
    ))
    visitor.qr_payload = payload
    logger.info("QR issued for visitor %s (booking %s)", visitor.id, visitor.booking_id)
    return payload


def render_qr_png(payload: str) -> str:
    """Render a payload as a base64-encoded PNG."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


# —— Resolution ——

def _by_visitor_id(db: Session, payload) -> Optional[Visitor]:
    visitor = db.get(Visitor, payload.visitor_id)
    if visitor is None:
        return None
    if payload.booking_id and visitor.booking_id != payload.booking_id:
        return None
    return visitor


def _by_token(db: Session, payload) -> Optional[Visitor]:
    token = db.get(RegistrationToken, payload.token_id)
    if token is None:
        return None
    if token.status == "pending" or token.visitor_id is None:
        raise NotFound("This visitor has not completed registration yet.", token_id=token.token_id)
    return token.visitor


def _by_email_and_booking(db: Session, payload) -> Optional[Visitor]:
    if not payload.booking_id or not payload.email:
        return None
    return (
        db.query(Visitor)
        .filter(Visitor.booking_id == payload.booking_id, Visitor.email == payload.email)
        .order_by(Visitor.created_at.desc())
        .first()
    )


_STRATEGIES: Dict[str, List[Callable]] = {
    "visitor": [_by_visitor_id, _by_email_and_booking],
    "token": [_by_token, _by_email_and_booking],
    "legacy_email": [_by_email_and_booking],
}


@read_retry
def resolve(db: Session, payload) -> Visitor:
    for strategy in _STRATEGIES[payload.kind]:
        visitor = strategy(db, payload)
        if visitor is not None:
            return visitor
    raise NotFound("No visitor matches this QR code.")


def validate(db: Session, payload) -> Visitor:
    """
    Resolve a payload and check it may be admitted.

    Checks run in a fixed order and stop at the first failure: booking
    cancelled, QR already consumed, visitor already visited, visitor not yet
    approved. Nothing is written; the check-in state machine applies the
    transition.
    """
    visitor = resolve(db, payload)
    booking = visitor.booking

    if booking.status == "cancelled":
        raise BookingCancelled("This booking has been cancelled and cannot be checked in.", booking_id=booking.id)
    if visitor.qr_used:
        raise AlreadyUsed("This QR code has already been used and cannot be scanned again.", visitor_id=visitor.id)
    if visitor.status == "visited":
        raise AlreadyCheckedIn("This visitor has already been checked in.", visitor_id=visitor.id)
    if visitor.status != "approved":
        raise ValidationError("This visitor has not been approved for check-in yet.", visitor_id=visitor.id)
    return visitor
