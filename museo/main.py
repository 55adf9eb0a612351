import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from museo.config import settings
from museo.db import init_db
from museo.errors import StorageError, VisitError
from routers import bookings, checkin, slots, tokens, visitors

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.PROJECT_NAME, version="0.1.0")

app.include_router(slots.router, prefix="/slots", tags=["slots"])
app.include_router(bookings.router, prefix="/bookings", tags=["bookings"])
app.include_router(tokens.router, prefix="/tokens", tags=["tokens"])
app.include_router(checkin.router, prefix="/checkin", tags=["checkin"])
app.include_router(visitors.router, prefix="/visitors", tags=["visitors"])


@app.exception_handler(VisitError)
async def visit_error_handler(request: Request, exc: VisitError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    detail = "; ".join(err["msg"] for err in exc.errors())
    return JSONResponse(status_code=400, content={"error": "ValidationError", "detail": detail})


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    error = StorageError("A storage error occurred. Please try again later.")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.on_event("startup")
def on_startup():
    if settings.SKIP_DB_INIT:
        return
    init_db()


@app.get("/")
def root():
    return {"ok": True, "service": "museo-booking-api"}


@app.get("/health")
def health_check():
    return {"status": "healthy"}
