import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from museo.bookings import approve_booking, cancel_booking
from museo.checkin import scan
from museo.errors import AlreadySubmitted, BookingCancelled, LinkExpired, NotFound, PrimaryVisitorMissing
from museo.models import Booking, RegistrationToken, Visitor, utcnow
from museo.schemas import TokenCompletion
from museo.tokens import complete_token, fetch_token, issue_token
from tests.conftest import person


def details(first="Juan", last="Dela Cruz", **extra):
    return TokenCompletion(first_name=first, last_name=last, gender="male", address="Manila", **extra)


@pytest.fixture
def group_booking(make_booking):
    return make_booking(
        booking_type="group",
        primary=person("Maria", "Santos", institution="Xavier University", purpose="educational"),
        dependents=[{"email": "juan@example.com"}, {"email": "ana@example.com"}],
        declared_total=3,
    )


def set_expiry(db, token_id, expires_at):
    token = db.get(RegistrationToken, token_id)
    token.expires_at = expires_at
    db.commit()


def test_fetch_returns_booking_context(group_booking, test_db_session):
    token_id = group_booking["tokens"][0].token_id
    context = fetch_token(test_db_session, token_id)

    assert context["status"] == "pending"
    assert context["email"] == "juan@example.com"
    assert context["visit_time"] == "10:00 - 11:00"
    assert context["primary_institution"] == "Xavier University"
    assert context["primary_purpose"] == "educational"
    assert context["is_group_leader"] is False


def test_fetch_unknown_token(test_db_session):
    with pytest.raises(NotFound):
        fetch_token(test_db_session, "missing-1")


def test_expiration_boundary(group_booking, test_db_session):
    first, second = [t.token_id for t in group_booking["tokens"]]
    now = utcnow()
    set_expiry(test_db_session, first, now - timedelta(seconds=1))
    set_expiry(test_db_session, second, now + timedelta(seconds=1))

    with pytest.raises(LinkExpired):
        fetch_token(test_db_session, first, now=now)
    with pytest.raises(LinkExpired):
        complete_token(test_db_session, first, details(), now=now)

    assert fetch_token(test_db_session, second, now=now)["status"] == "pending"
    result = complete_token(test_db_session, second, details(), now=now)
    assert result["visitor_id"]


def test_completion_creates_one_approved_visitor_with_qr(group_booking, test_db_session):
    token_id = group_booking["tokens"][0].token_id
    result = complete_token(test_db_session, token_id, details())

    visitor = test_db_session.get(Visitor, result["visitor_id"])
    token = test_db_session.get(RegistrationToken, token_id)
    assert visitor.status == "approved"
    assert not visitor.is_primary
    assert visitor.email == "juan@example.com"
    assert visitor.qr_payload == result["qr_payload"]
    assert token.status == "completed"
    assert token.visitor_id == visitor.id
    assert token.completed_at is not None
    assert token.details["first_name"] == "Juan"


def test_second_completion_is_rejected(group_booking, test_db_session):
    token_id = group_booking["tokens"][0].token_id
    complete_token(test_db_session, token_id, details())

    with pytest.raises(AlreadySubmitted):
        complete_token(test_db_session, token_id, details(first="Other"))

    booking_id = group_booking["booking_id"]
    assert test_db_session.query(Visitor).filter_by(booking_id=booking_id).count() == 2


def test_dependents_inherit_institution_and_purpose(group_booking, test_db_session):
    token_id = group_booking["tokens"][1].token_id
    # the dependent's own institution is ignored
    result = complete_token(test_db_session, token_id, details(institution="Elsewhere", purpose="leisure"))

    visitor = test_db_session.get(Visitor, result["visitor_id"])
    assert visitor.institution == "Xavier University"
    assert visitor.purpose == "educational"


def test_inherited_fields_are_a_snapshot(group_booking, test_db_session):
    result = complete_token(test_db_session, group_booking["tokens"][0].token_id, details())
    primary = test_db_session.get(Visitor, group_booking["primary_visitor_id"])
    primary.institution = "Renamed College"
    test_db_session.commit()

    visitor = test_db_session.get(Visitor, result["visitor_id"])
    assert visitor.institution == "Xavier University"


def test_cancellation_blocks_fetch_and_completion(group_booking, test_db_session):
    token_id = group_booking["tokens"][0].token_id
    fetch_token(test_db_session, token_id)
    cancel_booking(test_db_session, group_booking["booking_id"])

    with pytest.raises(BookingCancelled):
        fetch_token(test_db_session, token_id)
    with pytest.raises(BookingCancelled):
        complete_token(test_db_session, token_id, details())
    assert test_db_session.get(RegistrationToken, token_id).status == "pending"


def test_completion_requires_primary_visitor(group_booking, test_db_session):
    token_id = group_booking["tokens"][0].token_id
    test_db_session.query(Visitor).filter_by(id=group_booking["primary_visitor_id"]).delete()
    test_db_session.commit()

    with pytest.raises(PrimaryVisitorMissing):
        complete_token(test_db_session, token_id, details())

    # nothing half-done
    token = test_db_session.get(RegistrationToken, token_id)
    test_db_session.refresh(token)
    assert token.status == "pending"
    assert token.visitor_id is None
    assert test_db_session.query(Visitor).count() == 0


def test_issue_token_is_idempotent(group_booking, test_db_session):
    booking = test_db_session.get(Booking, group_booking["booking_id"])
    original = group_booking["tokens"][0]
    again = issue_token(test_db_session, booking, 1, "someone-else@example.com")
    test_db_session.commit()

    assert again.token_id == original.token_id
    assert again.email == "juan@example.com"
    assert test_db_session.query(RegistrationToken).filter_by(booking_id=booking.id).count() == 2


def test_leader_completion_fans_out_member_tokens_once(make_booking, test_db_session):
    result = make_booking(
        booking_type="group-walkin",
        primary={"email": "leader@example.com"},
        dependents=[{"email": "m1@example.com"}, {"email": "m2@example.com"}],
    )
    booking_id = result["booking_id"]
    approve_booking(test_db_session, booking_id)
    leader_token = f"{booking_id}-0"
    assert fetch_token(test_db_session, leader_token)["is_group_leader"] is True

    # members cannot register before the leader
    with pytest.raises(NotFound):
        fetch_token(test_db_session, f"{booking_id}-1")

    outcome = complete_token(
        test_db_session,
        leader_token,
        details(first="Lea", last="Tan", institution="Xavier University", purpose="research"),
    )
    assert outcome["visitor_id"] == result["primary_visitor_id"]
    assert sorted(t.token_id for t in outcome["issued_tokens"]) == [f"{booking_id}-1", f"{booking_id}-2"]

    leader = test_db_session.get(Visitor, result["primary_visitor_id"])
    assert leader.first_name == "Lea"
    assert leader.institution == "Xavier University"

    member_token = test_db_session.get(RegistrationToken, f"{booking_id}-1")
    assert member_token.details["group_leader"] == "Lea Tan"
    assert member_token.details["institution"] == "Xavier University"

    member = complete_token(test_db_session, f"{booking_id}-1", details(first="Mia", last="Lim"))
    visitor = test_db_session.get(Visitor, member["visitor_id"])
    assert visitor.institution == "Xavier University"
    assert visitor.purpose == "research"

    with pytest.raises(AlreadySubmitted):
        complete_token(test_db_session, leader_token, details(first="Lea", last="Tan"))
    assert test_db_session.query(RegistrationToken).filter_by(booking_id=booking_id).count() == 3


def test_concurrent_submissions_complete_once(group_booking, session_factory):
    token_id = group_booking["tokens"][0].token_id
    workers = 5
    barrier = threading.Barrier(workers)

    def attempt(n):
        db = session_factory()
        try:
            barrier.wait()
            try:
                complete_token(db, token_id, details(first=f"Juan{n}"))
                return "ok"
            except AlreadySubmitted:
                return "submitted"
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(attempt, range(workers)))

    assert outcomes.count("ok") == 1
    assert outcomes.count("submitted") == workers - 1

    db = session_factory()
    try:
        companions = db.query(Visitor).filter_by(booking_id=group_booking["booking_id"], is_primary=False).all()
        assert len(companions) == 1
        assert db.get(RegistrationToken, token_id).visitor_id == companions[0].id
    finally:
        db.close()


def test_individual_walkin_self_registration(make_booking, test_db_session):
    result = make_booking(booking_type="individual-walkin", primary={"email": "walkin@example.com"})
    booking_id = result["booking_id"]
    token_id = f"{booking_id}-0"
    assert [t.token_id for t in result["tokens"]] == [token_id]
    assert fetch_token(test_db_session, token_id)["is_group_leader"] is False

    outcome = complete_token(
        test_db_session, token_id, details(first="Leo", last="Cruz", institution="Xavier University")
    )
    assert outcome["visitor_id"] == result["primary_visitor_id"]
    assert outcome["issued_tokens"] == []
    assert test_db_session.query(Visitor).filter_by(booking_id=booking_id).count() == 1

    primary = test_db_session.get(Visitor, result["primary_visitor_id"])
    assert primary.full_name == "Leo Cruz"
    assert primary.institution == "Xavier University"
    assert primary.status == "approved"
    assert primary.qr_payload == outcome["qr_payload"]

    scan(test_db_session, outcome["qr_payload"])
    assert test_db_session.get(RegistrationToken, token_id).status == "checked_in"
    assert test_db_session.get(Booking, booking_id).status == "checked-in"

    with pytest.raises(AlreadySubmitted):
        complete_token(test_db_session, token_id, details(first="Leo", last="Cruz"))


def test_named_individual_walkin_gets_no_token(make_booking):
    result = make_booking(booking_type="individual-walkin")
    assert result["tokens"] == []
