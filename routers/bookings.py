import datetime as dt
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from museo import bookings
from museo.db import get_db
from museo.schemas import BookingCreate, BookingCreated, BookingOut, BookingStatusOut

router = APIRouter()


@router.post("", status_code=201, response_model=BookingCreated)
def create_booking(body: BookingCreate, db: Session = Depends(get_db)):
    """
    Reserve a slot and register the primary visitor.

    Capacity is checked and reserved in one statement; companions of scheduled
    bookings receive registration tokens.
    """
    return bookings.create_booking(db, body)


@router.get("", response_model=List[BookingOut])
def list_bookings(
    date: Optional[dt.date] = Query(default=None),
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db)
):
    return bookings.list_bookings(db, date=date.isoformat() if date else None, status=status)


@router.get("/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: str, db: Session = Depends(get_db)):
    return bookings.get_booking(db, booking_id)


@router.put("/{booking_id}/approve", response_model=BookingStatusOut)
def approve_booking(booking_id: str, db: Session = Depends(get_db)):
    # Approving an approved booking is a no-op success
    booking = bookings.approve_booking(db, booking_id)
    return {"booking_id": booking.id, "status": booking.status}


@router.put("/{booking_id}/cancel", response_model=BookingStatusOut)
def cancel_booking(booking_id: str, db: Session = Depends(get_db)):
    booking = bookings.cancel_booking(db, booking_id)
    return {"booking_id": booking.id, "status": booking.status}


@router.put("/{booking_id}/reject", response_model=BookingStatusOut)
def reject_booking(booking_id: str, db: Session = Depends(get_db)):
    """Rejection is recorded as a cancellation."""
    booking = bookings.cancel_booking(db, booking_id, action="rejected")
    return {"booking_id": booking.id, "status": booking.status}


@router.delete("/{booking_id}")
def delete_booking(booking_id: str, db: Session = Depends(get_db)):
    bookings.delete_booking(db, booking_id)
    return {"booking_id": booking_id, "deleted": True}
