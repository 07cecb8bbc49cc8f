from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, is_admin
from ..db import get_db
from ..models.models import User, WorkCheckin
from ..schemas.work_checkins import WorkCheckinCheckout, WorkCheckinCreate
from ..services import work_checkins as svc
from ..services.work_assignments import get_assignee, get_work_assignment


router = APIRouter(prefix="/work-checkins", tags=["work-checkins"])


def _serialize_checkin(c: WorkCheckin) -> Dict[str, Any]:
    return {
        "id": c.id,
        "assignmentId": c.assignment_id,
        "userId": c.user_id,
        "checkedInWith": svc.companion_ids(c),
        "checkInTime": c.check_in_time.isoformat() if c.check_in_time else None,
        "checkOutTime": c.check_out_time.isoformat() if c.check_out_time else None,
        "location": c.location,
        "notes": c.notes,
        "state": svc.checkin_state(c),
        "durationMinutes": svc.duration_minutes(c),
        "createdAt": c.created_at.isoformat() if c.created_at else None,
    }


@router.post("", status_code=201)
def create_checkin(payload: WorkCheckinCreate, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    user_id = payload.user_id if payload.user_id is not None else me.id
    if user_id != me.id and not is_admin(me):
        raise HTTPException(status_code=403, detail="You can only check in yourself")
    if not is_admin(me):
        assignment = get_work_assignment(db, payload.assignment_id)
        if me.id not in get_assignee(assignment).user_ids:
            raise HTTPException(status_code=403, detail="You are not assigned to this work")
    checkin = svc.check_in(
        db,
        assignment_id=payload.assignment_id,
        user_id=user_id,
        location=payload.location,
        notes=payload.notes,
        checked_in_with=payload.checked_in_with,
        check_in_time=payload.check_in_time,
        actor_id=me.id,
        actor_role=me.role,
    )
    return _serialize_checkin(checkin)


@router.patch("/{checkin_id}")
def checkout(
    checkin_id: int,
    payload: Optional[WorkCheckinCheckout] = None,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    payload = payload or WorkCheckinCheckout()
    current = svc.get_checkin(db, checkin_id)
    if current.user_id != me.id and not is_admin(me):
        raise HTTPException(status_code=403, detail="You can only check out your own session")
    checkin = svc.check_out(
        db,
        checkin_id,
        notes=payload.notes,
        check_out_time=payload.check_out_time,
        actor_id=me.id,
        actor_role=me.role,
    )
    return _serialize_checkin(checkin)


@router.get("/status")
def checkin_status(userId: int, assignmentId: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return {"checkedIn": svc.is_user_checked_in(db, userId, assignmentId)}


@router.get("/assignment/{assignment_id}")
def list_for_assignment(assignment_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return [_serialize_checkin(c) for c in svc.get_checkins_by_assignment(db, assignment_id)]


@router.get("/assignment/{assignment_id}/activity")
def assignment_activity(
    assignment_id: int,
    limit: Optional[int] = None,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    return svc.recent_activity(db, assignment_id, limit=limit)


@router.get("/user/{user_id}")
def list_for_user(user_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return [_serialize_checkin(c) for c in svc.get_checkins_by_user(db, user_id)]
