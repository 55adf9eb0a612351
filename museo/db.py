import functools
import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from museo.config import settings

logger = logging.getLogger(__name__)


def make_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # busy timeout lets concurrent writers queue on the database lock
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    # Import models here to create tables
    from museo.models import Booking, RegistrationToken, Visitor  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)


def dialect_name(db: Session) -> str:
    return db.get_bind().dialect.name


def read_retry(func):
    """
    Retry an idempotent read on transient connection failures.

    The wrapped function must take the Session as its first argument; the
    session is rolled back between attempts. Never use this on writes.
    """
    @functools.wraps(func)
    def wrapper(db: Session, *args, **kwargs):
        for attempt in Retrying(
            retry=retry_if_exception_type(OperationalError),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                try:
                    return func(db, *args, **kwargs)
                except OperationalError:
                    db.rollback()
                    raise
    return wrapper
