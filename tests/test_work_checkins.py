from datetime import datetime, timedelta, timezone

import pytest

from repaircrm.models.models import WorkCheckin
from repaircrm.services import work_checkins as svc
from repaircrm.services.errors import ConflictError, NotFoundError, ValidationError
from repaircrm.services.work_assignments import create_work_assignment


@pytest.fixture
def team(make_user):
    return make_user("ravi", name="Ravi"), make_user("meena", name="Meena"), make_user("arjun")


@pytest.fixture
def assignment(db, admin, team):
    return create_work_assignment(
        db,
        assigned_by=admin.id,
        work_type="service_complaint",
        work_id=42,
        assigned_user_ids=[u.id for u in team],
    )


def test_check_in_opens_session(db, assignment, team):
    c = svc.check_in(db, assignment_id=assignment.id, user_id=team[0].id, location="Shop A", checked_in_with="[2, 3]")
    assert c.check_out_time is None
    assert svc.checkin_state(c) == "open"
    assert svc.duration_minutes(c) is None
    assert svc.companion_ids(c) == [2, 3]
    assert svc.is_user_checked_in(db, team[0].id, assignment.id)


def test_second_open_session_is_rejected(db, assignment, team):
    svc.check_in(db, assignment_id=assignment.id, user_id=team[0].id, location="Shop A")
    with pytest.raises(ConflictError):
        svc.check_in(db, assignment_id=assignment.id, user_id=team[0].id, location="Shop A")

    open_rows = db.query(WorkCheckin).filter(
        WorkCheckin.user_id == team[0].id, WorkCheckin.check_out_time.is_(None)
    ).count()
    assert open_rows == 1

    other = svc.check_in(db, assignment_id=assignment.id, user_id=team[1].id)
    assert other.user_id == team[1].id


def test_concurrent_duplicate_hits_unique_index(db, assignment, team, monkeypatch):
    svc.check_in(db, assignment_id=assignment.id, user_id=team[1].id)
    # Both requests passed the open-session read before either inserted
    monkeypatch.setattr(svc, "_open_session", lambda *args: None)

    with pytest.raises(ConflictError):
        svc.check_in(db, assignment_id=assignment.id, user_id=team[1].id)

    open_rows = db.query(WorkCheckin).filter(
        WorkCheckin.assignment_id == assignment.id,
        WorkCheckin.user_id == team[1].id,
        WorkCheckin.check_out_time.is_(None),
    ).count()
    assert open_rows == 1

    other = svc.check_in(db, assignment_id=assignment.id, user_id=team[2].id)
    assert other.id is not None
    assert svc.checkin_state(other) == "open"


def test_can_check_in_again_after_check_out(db, assignment, team):
    first = svc.check_in(db, assignment_id=assignment.id, user_id=team[0].id)
    svc.check_out(db, first.id)
    second = svc.check_in(db, assignment_id=assignment.id, user_id=team[0].id)
    assert second.id != first.id


def test_check_in_validation(db, assignment, team, make_user):
    with pytest.raises(NotFoundError):
        svc.check_in(db, assignment_id=999, user_id=team[0].id)
    with pytest.raises(ValidationError):
        svc.check_in(db, assignment_id=assignment.id, user_id=999)
    deleted = make_user("left", is_deleted=True, is_active=False)
    with pytest.raises(ValidationError):
        svc.check_in(db, assignment_id=assignment.id, user_id=deleted.id)
    with pytest.raises(ValidationError):
        svc.check_in(db, assignment_id=assignment.id, user_id=team[0].id, checked_in_with="not-json")


def test_check_out_closes_once(db, assignment, team):
    start = datetime(2024, 5, 1, 9, 0)
    c = svc.check_in(db, assignment_id=assignment.id, user_id=team[0].id, check_in_time=start)
    closed = svc.check_out(db, c.id, notes="replaced compressor", check_out_time=start + timedelta(minutes=95))
    assert svc.checkin_state(closed) == "closed"
    assert svc.duration_minutes(closed) == 95
    assert closed.notes == "replaced compressor"

    again = svc.check_out(db, c.id, check_out_time=start + timedelta(hours=5))
    assert again.check_out_time == start + timedelta(minutes=95)


def test_check_out_before_check_in_rejected(db, assignment, team):
    start = datetime(2024, 5, 1, 9, 0)
    c = svc.check_in(db, assignment_id=assignment.id, user_id=team[0].id, check_in_time=start)
    with pytest.raises(ValidationError):
        svc.check_out(db, c.id, check_out_time=start - timedelta(minutes=1))


def test_aware_times_are_stored_as_utc(db, assignment, team):
    ist = timezone(timedelta(hours=5, minutes=30))
    c = svc.check_in(
        db, assignment_id=assignment.id, user_id=team[0].id,
        check_in_time=datetime(2024, 5, 1, 14, 30, tzinfo=ist),
    )
    assert c.check_in_time.replace(tzinfo=None) == datetime(2024, 5, 1, 9, 0)


def test_check_out_unknown(db):
    with pytest.raises(NotFoundError):
        svc.check_out(db, 404)


def test_listings_newest_first(db, assignment, team):
    base = datetime(2024, 5, 1, 8, 0)
    a = svc.check_in(db, assignment_id=assignment.id, user_id=team[0].id, check_in_time=base)
    svc.check_out(db, a.id, check_out_time=base + timedelta(hours=1))
    b = svc.check_in(db, assignment_id=assignment.id, user_id=team[0].id, check_in_time=base + timedelta(hours=2))
    c = svc.check_in(db, assignment_id=assignment.id, user_id=team[1].id, check_in_time=base + timedelta(hours=3))

    assert [x.id for x in svc.get_checkins_by_assignment(db, assignment.id)] == [c.id, b.id, a.id]
    assert [x.id for x in svc.get_checkins_by_user(db, team[0].id)] == [b.id, a.id]
    assert {x.id for x in svc.get_open_checkins(db, assignment.id)} == {b.id, c.id}


def test_team_status(db, assignment, team):
    svc.check_in(db, assignment_id=assignment.id, user_id=team[1].id)
    status = svc.team_status(db, assignment.id)
    assert status["isTeamAssignment"] is True
    assert status["checkedInCount"] == 1
    assert [m["userId"] for m in status["members"]] == [u.id for u in team]
    assert [m["checkedIn"] for m in status["members"]] == [False, True, False]


def test_recent_activity_feed(db, assignment, team):
    base = datetime(2024, 5, 1, 9, 5)
    first = svc.check_in(db, assignment_id=assignment.id, user_id=team[0].id, check_in_time=base)
    svc.check_out(db, first.id, check_out_time=base + timedelta(hours=2, minutes=10))
    svc.check_in(db, assignment_id=assignment.id, user_id=team[2].id, check_in_time=base + timedelta(hours=3))

    feed = svc.recent_activity(db, assignment.id)
    assert [item["text"] for item in feed] == [
        "arjun checked in 12:05",
        "Ravi worked 09:05 - 11:15",
    ]
    assert feed[0]["state"] == "open"


def test_recent_activity_limit(db, assignment, team):
    base = datetime(2024, 5, 1, 9, 0)
    for i in range(7):
        c = svc.check_in(db, assignment_id=assignment.id, user_id=team[0].id, check_in_time=base + timedelta(hours=i))
        svc.check_out(db, c.id, check_out_time=base + timedelta(hours=i, minutes=30))
    assert len(svc.recent_activity(db, assignment.id)) == 5
    assert len(svc.recent_activity(db, assignment.id, limit=2)) == 2
    with pytest.raises(ValidationError):
        svc.recent_activity(db, assignment.id, limit=0)
