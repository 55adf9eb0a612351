from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from museo import visitors
from museo.db import get_db
from museo.errors import NotFound
from museo.qr import render_qr_png
from museo.schemas import QRCodeOut, VisitorSummary

router = APIRouter()


@router.get("/{visitor_id}", response_model=VisitorSummary)
def get_visitor(visitor_id: str, db: Session = Depends(get_db)):
    return visitors.get_visitor(db, visitor_id)


@router.get("/{visitor_id}/qr", response_model=QRCodeOut)
def get_visitor_qr(visitor_id: str, db: Session = Depends(get_db)):
    visitor = visitors.get_visitor(db, visitor_id)
    if not visitor.qr_payload:
        raise NotFound("No QR code has been issued for this visitor yet.", visitor_id=visitor_id)
    return {
        "visitor_id": visitor.id,
        "qr_payload": visitor.qr_payload,
        "qr_image": render_qr_png(visitor.qr_payload),
    }
