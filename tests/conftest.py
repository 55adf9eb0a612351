# tests/conftest.py
import os
import tempfile

# must be set before museo.config builds its settings
os.environ["SKIP_DB_INIT"] = "1"
os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.gettempdir()}/museo_unused.db")

import datetime as dt

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from museo.bookings import create_booking
from museo.db import get_db, init_db, make_engine
from museo.main import app
from museo.schemas import BookingCreate

VISIT_DATE = dt.date(2030, 5, 17)
WINDOW = "10:00 - 11:00"


@pytest.fixture(scope="function")
def engine(tmp_path):
    # temp DB per test
    engine = make_engine(f"sqlite:///{tmp_path / 'museo_test.db'}")
    init_db(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def test_db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


# —— Factories ——
def person(first, last, email=None, **extra):
    info = {"first_name": first, "last_name": last, "email": email or f"{first.lower()}@example.com"}
    info.update(extra)
    return info


@pytest.fixture
def make_booking(test_db_session):
    def _make_booking(
        booking_type="individual",
        primary=None,
        dependents=None,
        date=VISIT_DATE,
        window=WINDOW,
        declared_total=None,
    ):
        request = BookingCreate(
            type=booking_type,
            primary_visitor=primary or person(
                "Maria", "Santos", institution="Xavier University", purpose="educational"
            ),
            dependents=dependents or [],
            date=date,
            window=window,
            declared_total=declared_total,
        )
        return create_booking(test_db_session, request)
    return _make_booking
