import datetime as dt
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from museo.db import get_db
from museo.ledger import slot_usage
from museo.schemas import SlotUsage

router = APIRouter()


@router.get("", response_model=List[SlotUsage])
def list_slots(
    date: dt.date = Query(..., description="Visit date (YYYY-MM-DD)"),
    db: Session = Depends(get_db)
):
    """
    Booked-vs-capacity for every time window on a date.

    Cancelled bookings do not count against capacity.
    """
    return slot_usage(db, date.isoformat())
