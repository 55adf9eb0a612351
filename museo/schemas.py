import datetime as dt
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

BookingType = Literal["individual", "group", "individual-walkin", "group-walkin"]


class CamelModel(BaseModel):
    # Accept both snake_case and camelCase on input, emit camelCase
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class VisitorInfo(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    nationality: Optional[str] = None
    visitor_type: Optional[str] = None
    purpose: Optional[str] = None
    institution: Optional[str] = None

    @property
    def has_name(self) -> bool:
        return bool((self.first_name or "").strip() and (self.last_name or "").strip())


class BookingCreate(CamelModel):
    type: BookingType
    primary_visitor: VisitorInfo
    dependents: List[VisitorInfo] = []
    date: dt.date
    window: str
    declared_total: Optional[int] = None


class TokenOut(CamelModel):
    token_id: str
    email: Optional[str] = None
    status: str
    expires_at: dt.datetime


class BookingCreated(CamelModel):
    booking_id: str
    primary_visitor_id: str
    visitor_ids: List[str] = []
    tokens: List[TokenOut] = []


class VisitorSummary(CamelModel):
    id: str
    booking_id: str
    is_primary: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    nationality: Optional[str] = None
    visitor_type: Optional[str] = None
    purpose: Optional[str] = None
    institution: Optional[str] = None
    status: str
    checkin_time: Optional[dt.datetime] = None
    qr_used: bool = False


class BookingOut(CamelModel):
    id: str
    type: str
    status: str
    date: str
    time_slot: str
    total_visitors: int
    created_at: Optional[dt.datetime] = None
    checkin_time: Optional[dt.datetime] = None
    visitors: List[VisitorSummary] = []
    tokens: List[TokenOut] = []


class BookingStatusOut(CamelModel):
    booking_id: str
    status: str


class SlotUsage(CamelModel):
    time: str
    booked: int
    capacity: int
    available: int


class TokenContext(CamelModel):
    token_id: str
    booking_id: str
    email: Optional[str] = None
    status: str
    expires_at: dt.datetime
    visit_date: str
    visit_time: str
    booking_type: str
    is_group_leader: bool = False
    primary_institution: Optional[str] = None
    primary_purpose: Optional[str] = None
    details: Optional[dict] = None


class TokenCompletion(CamelModel):
    first_name: str
    last_name: str
    gender: Optional[str] = None
    address: Optional[str] = None
    nationality: Optional[str] = None
    visitor_type: Optional[str] = None
    # Honoured only on a group leader's token; dependents inherit
    institution: Optional[str] = None
    purpose: Optional[str] = None


class CompletionResult(CamelModel):
    visitor_id: str
    qr_payload: str
    qr_image: Optional[str] = None
    issued_tokens: List[TokenOut] = []


class ScanRequest(CamelModel):
    qr_data: str


class BackupCodeRequest(CamelModel):
    code: str


class CheckInResult(CamelModel):
    visitor: VisitorSummary
    booking_status: str


class QRCodeOut(CamelModel):
    visitor_id: str
    qr_payload: str
    qr_image: str
