from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from museo import tokens
from museo.db import get_db
from museo.qr import render_qr_png
from museo.schemas import CompletionResult, TokenCompletion, TokenContext

router = APIRouter()


@router.get("/{token_id}", response_model=TokenContext)
def get_token(token_id: str, db: Session = Depends(get_db)):
    """Token status and booking context for the self-service registration form."""
    return tokens.fetch_token(db, token_id)


@router.put("/{token_id}", response_model=CompletionResult)
def complete_token(token_id: str, body: TokenCompletion, db: Session = Depends(get_db)):
    """
    Submit personal details for a token. Produces exactly one visitor with a
    QR code; a second submission is rejected with AlreadySubmitted.
    """
    result = tokens.complete_token(db, token_id, body)
    return {**result, "qr_image": render_qr_png(result["qr_payload"])}
