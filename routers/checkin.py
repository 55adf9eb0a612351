from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from museo import checkin
from museo.db import get_db
from museo.schemas import BackupCodeRequest, CheckInResult, ScanRequest

router = APIRouter()


def _result(visitor):
    return {"visitor": visitor, "booking_status": visitor.booking.status}


@router.post("", response_model=CheckInResult)
def scan_qr(body: ScanRequest, db: Session = Depends(get_db)):
    """
    Check a visitor in from scanned QR data.

    Each code admits once: replays get AlreadyUsed, cancelled bookings get
    BookingCancelled, unregistered tokens get NotFound.
    """
    return _result(checkin.scan(db, body.qr_data))


@router.post("/backup-code", response_model=CheckInResult)
def check_in_with_backup_code(body: BackupCodeRequest, db: Session = Depends(get_db)):
    # Manual entry of the visitor id or token id printed under the QR code
    return _result(checkin.scan(db, body.code))
