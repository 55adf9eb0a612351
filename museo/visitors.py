from sqlalchemy.orm import Session

from museo.db import read_retry
from museo.errors import NotFound
from museo.models import Visitor


@read_retry
def get_visitor(db: Session, visitor_id: str) -> Visitor:
    visitor = db.get(Visitor, visitor_id)
    if visitor is None:
        raise NotFound("Visitor not found.", visitor_id=visitor_id)
    return visitor
