"""
Team check-in tracking.
One open session per user per assignment; check-out closes it once.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import User, WorkAssignment, WorkCheckin
from .assignees import decode_user_ids, encode_user_ids, parse_user_id_input
from .audit import create_audit_log
from .errors import ConflictError, NotFoundError, ValidationError
from .time_rules import format_clock, minutes_between, to_naive_utc
from .work_assignments import get_assignee, get_work_assignment


logger = structlog.get_logger(__name__)


def _open_session(db: Session, assignment_id: int, user_id: int) -> Optional[WorkCheckin]:
    return (
        db.query(WorkCheckin)
        .filter(
            WorkCheckin.assignment_id == assignment_id,
            WorkCheckin.user_id == user_id,
            WorkCheckin.check_out_time.is_(None),
        )
        .first()
    )


def _duplicate_session_error(assignment_id: int, user_id: int) -> ConflictError:
    return ConflictError(
        "User is already checked in to this assignment",
        details=[{"assignmentId": assignment_id, "userId": user_id}],
    )


def check_in(
    db: Session,
    *,
    assignment_id: int,
    user_id: int,
    location: Optional[str] = None,
    notes: Optional[str] = None,
    checked_in_with: Any = None,
    check_in_time: Optional[datetime] = None,
    actor_id: Optional[int] = None,
    actor_role: Optional[str] = None,
) -> WorkCheckin:
    assignment = get_work_assignment(db, assignment_id)

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise ValidationError("User not found", details=[{"field": "userId", "userId": user_id}])
    if not user.can_take_work:
        raise ValidationError(
            "User is inactive or deleted",
            details=[{"field": "userId", "userId": user_id}],
        )

    companions = parse_user_id_input(checked_in_with, "checkedInWith")

    if _open_session(db, assignment.id, user_id) is not None:
        raise _duplicate_session_error(assignment.id, user_id)

    checkin = WorkCheckin(
        assignment_id=assignment.id,
        user_id=user_id,
        checked_in_with=encode_user_ids(companions),
        check_in_time=to_naive_utc(check_in_time) or datetime.utcnow(),
        location=location or None,
        notes=notes or None,
        created_at=datetime.utcnow(),
    )
    db.add(checkin)
    try:
        db.flush()
    except IntegrityError:
        # Lost the race against a concurrent check-in for the same user
        db.rollback()
        raise _duplicate_session_error(assignment.id, user_id)

    create_audit_log(
        db=db,
        entity_type="work_checkin",
        entity_id=checkin.id,
        action="CHECK_IN",
        actor_id=actor_id if actor_id is not None else user_id,
        actor_role=actor_role or user.role,
        source="api",
        changes_json={"after": checkin_snapshot(checkin)},
        context={"assignment_id": assignment.id, "location": checkin.location},
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise _duplicate_session_error(assignment.id, user_id)
    db.refresh(checkin)
    logger.info("work_checkin_opened", checkin_id=checkin.id, assignment_id=assignment.id, user_id=user_id)
    return checkin


def get_checkin(db: Session, checkin_id: int) -> WorkCheckin:
    checkin = db.query(WorkCheckin).filter(WorkCheckin.id == checkin_id).first()
    if not checkin:
        raise NotFoundError("Work check-in not found")
    return checkin


def check_out(
    db: Session,
    checkin_id: int,
    *,
    notes: Optional[str] = None,
    check_out_time: Optional[datetime] = None,
    actor_id: Optional[int] = None,
    actor_role: Optional[str] = None,
) -> WorkCheckin:
    """
    Close a session. Closing an already closed session returns it unchanged.
    """
    checkin = get_checkin(db, checkin_id)
    if checkin.check_out_time is not None:
        return checkin

    closed_at = to_naive_utc(check_out_time) or datetime.utcnow()
    if closed_at < to_naive_utc(checkin.check_in_time):
        raise ValidationError(
            "checkOutTime cannot be earlier than checkInTime",
            details=[{"field": "checkOutTime", "message": "before check-in"}],
        )

    before = checkin_snapshot(checkin)
    checkin.check_out_time = closed_at
    if notes is not None:
        checkin.notes = notes or None

    create_audit_log(
        db=db,
        entity_type="work_checkin",
        entity_id=checkin.id,
        action="CHECK_OUT",
        actor_id=actor_id if actor_id is not None else checkin.user_id,
        actor_role=actor_role,
        source="api",
        changes_json={"before": before, "after": checkin_snapshot(checkin)},
        context={"assignment_id": checkin.assignment_id},
    )
    db.commit()
    db.refresh(checkin)
    logger.info(
        "work_checkin_closed",
        checkin_id=checkin.id,
        assignment_id=checkin.assignment_id,
        user_id=checkin.user_id,
        duration_minutes=duration_minutes(checkin),
    )
    return checkin


def checkin_snapshot(checkin: WorkCheckin) -> Dict[str, Any]:
    return {
        "assignment_id": checkin.assignment_id,
        "user_id": checkin.user_id,
        "checked_in_with": checkin.checked_in_with,
        "check_in_time": checkin.check_in_time.isoformat() if checkin.check_in_time else None,
        "check_out_time": checkin.check_out_time.isoformat() if checkin.check_out_time else None,
        "location": checkin.location,
        "notes": checkin.notes,
    }


def checkin_state(checkin: WorkCheckin) -> str:
    return "open" if checkin.check_out_time is None else "closed"


def duration_minutes(checkin: WorkCheckin) -> Optional[int]:
    if checkin.check_out_time is None:
        return None
    return minutes_between(checkin.check_in_time, checkin.check_out_time)


def companion_ids(checkin: WorkCheckin) -> Optional[List[int]]:
    return decode_user_ids(checkin.checked_in_with)


def _latest_first(query):
    return query.order_by(WorkCheckin.check_in_time.desc(), WorkCheckin.id.desc())


def get_checkins_by_assignment(db: Session, assignment_id: int) -> List[WorkCheckin]:
    return _latest_first(db.query(WorkCheckin).filter(WorkCheckin.assignment_id == assignment_id)).all()


def get_checkins_by_user(db: Session, user_id: int) -> List[WorkCheckin]:
    return _latest_first(db.query(WorkCheckin).filter(WorkCheckin.user_id == user_id)).all()


def get_open_checkins(db: Session, assignment_id: int) -> List[WorkCheckin]:
    query = db.query(WorkCheckin).filter(
        WorkCheckin.assignment_id == assignment_id,
        WorkCheckin.check_out_time.is_(None),
    )
    return _latest_first(query).all()


def is_user_checked_in(db: Session, user_id: int, assignment_id: int) -> bool:
    return _open_session(db, assignment_id, user_id) is not None


def get_assigned_users(db: Session, assignment: WorkAssignment) -> List[User]:
    """
    Users on the job in assignment order. Ids without a user row are skipped.
    """
    user_ids = get_assignee(assignment).user_ids
    users = {u.id: u for u in db.query(User).filter(User.id.in_(user_ids)).all()}
    return [users[uid] for uid in user_ids if uid in users]


def is_team_assignment(db: Session, assignment: WorkAssignment) -> bool:
    return len(get_assigned_users(db, assignment)) > 1


def team_status(db: Session, assignment_id: int) -> Dict[str, Any]:
    assignment = get_work_assignment(db, assignment_id)
    members = get_assigned_users(db, assignment)
    open_by_user = {c.user_id: c for c in get_open_checkins(db, assignment.id)}

    team = []
    for user in members:
        open_checkin = open_by_user.get(user.id)
        team.append({
            "userId": user.id,
            "name": user.display_name,
            "role": user.role,
            "checkedIn": open_checkin is not None,
            "checkinId": open_checkin.id if open_checkin else None,
            "checkInTime": open_checkin.check_in_time.isoformat() if open_checkin else None,
        })

    return {
        "assignmentId": assignment.id,
        "isTeamAssignment": len(members) > 1,
        "checkedInCount": sum(1 for m in team if m["checkedIn"]),
        "members": team,
    }


def describe_checkin(checkin: WorkCheckin) -> str:
    if checkin.check_out_time is None:
        return f"checked in {format_clock(checkin.check_in_time)}"
    return f"worked {format_clock(checkin.check_in_time)} - {format_clock(checkin.check_out_time)}"


def recent_activity(db: Session, assignment_id: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Latest check-ins on an assignment rendered for the activity feed."""
    get_work_assignment(db, assignment_id)
    if limit is None:
        limit = settings.activity_feed_limit
    if limit < 1:
        raise ValidationError("limit must be positive", details=[{"field": "limit", "value": limit}])

    checkins = _latest_first(
        db.query(WorkCheckin).filter(WorkCheckin.assignment_id == assignment_id)
    ).limit(limit).all()

    user_ids = {c.user_id for c in checkins}
    users = {u.id: u for u in db.query(User).filter(User.id.in_(user_ids)).all()} if user_ids else {}

    feed = []
    for checkin in checkins:
        user = users.get(checkin.user_id)
        name = user.display_name if user else "Unknown User"
        feed.append({
            "checkinId": checkin.id,
            "userId": checkin.user_id,
            "userName": name,
            "state": checkin_state(checkin),
            "summary": describe_checkin(checkin),
            "text": f"{name} {describe_checkin(checkin)}",
            "checkInTime": checkin.check_in_time.isoformat(),
            "checkOutTime": checkin.check_out_time.isoformat() if checkin.check_out_time else None,
        })
    return feed
