from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from museo.db import Base

BOOKING_TYPES = ("individual", "group", "individual-walkin", "group-walkin")
WALKIN_TYPES = ("individual-walkin", "group-walkin")


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(String, primary_key=True)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending|approved|cancelled|checked-in
    date = Column(String, nullable=False)  # ISO date
    time_slot = Column(String, nullable=False)
    total_visitors = Column(Integer, nullable=False)
    dependent_contacts = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime)
    checkin_time = Column(DateTime)

    visitors = relationship("Visitor", back_populates="booking", order_by="Visitor.created_at")
    tokens = relationship("RegistrationToken", back_populates="booking", order_by="RegistrationToken.ordinal")

    __table_args__ = (
        CheckConstraint(
            "type in ('individual','group','individual-walkin','group-walkin')", name="booking_type_valid"
        ),
        CheckConstraint(
            "status in ('pending','approved','cancelled','checked-in')", name="booking_status_valid"
        ),
        CheckConstraint("total_visitors > 0", name="booking_total_positive"),
    )

    @property
    def is_walkin(self) -> bool:
        return self.type in WALKIN_TYPES


class Visitor(Base):
    __tablename__ = "visitors"
    id = Column(String, primary_key=True)
    booking_id = Column(String, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    is_primary = Column(Boolean, nullable=False, default=False)
    first_name = Column(String)
    last_name = Column(String)
    gender = Column(String)
    address = Column(String)
    email = Column(String, index=True)
    nationality = Column(String)
    visitor_type = Column(String)
    purpose = Column(String)
    institution = Column(String)
    status = Column(String, nullable=False, default="pending")  # pending|approved|visited
    checkin_time = Column(DateTime)
    qr_used = Column(Boolean, nullable=False, default=False)
    qr_payload = Column(Text)
    created_at = Column(DateTime)

    booking = relationship("Booking", back_populates="visitors")

    __table_args__ = (
        CheckConstraint("status in ('pending','approved','visited')", name="visitor_status_valid"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class RegistrationToken(Base):
    __tablename__ = "registration_tokens"
    token_id = Column(String, primary_key=True)  # "{booking_id}-{ordinal}"
    booking_id = Column(String, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    ordinal = Column(Integer, nullable=False)
    email = Column(String)
    status = Column(String, nullable=False, default="pending")  # pending|completed|checked_in
    expires_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)
    details = Column(JSON)
    visitor_id = Column(String, ForeignKey("visitors.id", ondelete="SET NULL"))
    created_at = Column(DateTime)

    booking = relationship("Booking", back_populates="tokens")
    visitor = relationship("Visitor")

    __table_args__ = (
        CheckConstraint("status in ('pending','completed','checked_in')", name="token_status_valid"),
        UniqueConstraint("booking_id", "ordinal", name="uniq_booking_token_ordinal"),
    )


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
