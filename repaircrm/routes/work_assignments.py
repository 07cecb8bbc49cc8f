from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, is_admin, require_roles
from ..db import get_db
from ..models.models import User, WorkAssignment
from ..schemas.work_assignments import WorkAssignmentCreate, WorkAssignmentUpdate
from ..services.assignees import decode_user_ids, parse_user_id_input
from ..services.audit import get_audit_logs, verify_audit_log
from ..services.notifications import dispatch_assignment_notification
from ..services import work_assignments as svc
from ..services.work_checkins import team_status


router = APIRouter(prefix="/work-assignments", tags=["work-assignments"])

# Fields a non-admin assignee may change on their own assignment
ASSIGNEE_EDITABLE = {"status", "assignment_notes"}


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize_assignment(a: WorkAssignment) -> Dict[str, Any]:
    user_ids = svc.get_assignee(a).user_ids
    return {
        "id": a.id,
        "assignedBy": a.assigned_by,
        "assignedTo": a.assigned_to,
        "assignedUsers": decode_user_ids(a.assigned_users),
        "assignedUserIds": user_ids,
        "isTeamAssignment": len(user_ids) > 1,
        "workType": a.work_type,
        "workId": a.work_id,
        "priority": a.priority,
        "status": a.status,
        "assignmentNotes": a.assignment_notes,
        "dueDate": _iso(a.due_date),
        "startedAt": _iso(a.started_at),
        "completedAt": _iso(a.completed_at),
        "createdAt": _iso(a.created_at),
    }


@router.post("", status_code=201)
def create_assignment(
    payload: WorkAssignmentCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("admin")),
):
    assignment = svc.create_work_assignment(
        db,
        assigned_by=payload.assigned_by if payload.assigned_by is not None else me.id,
        work_type=payload.work_type,
        work_id=payload.work_id,
        assigned_to=payload.assigned_to,
        assigned_user_ids=parse_user_id_input(payload.user_id_input(), "assignedUserIds"),
        priority=payload.priority,
        assignment_notes=payload.assignment_notes,
        due_date=payload.due_date,
        actor_role=me.role,
    )
    background_tasks.add_task(dispatch_assignment_notification, assignment.id, "created")
    return {
        "success": True,
        "message": "Work assigned successfully",
        "data": _serialize_assignment(assignment),
    }


@router.get("")
def list_assignments(
    status: Optional[str] = None,
    workType: Optional[str] = None,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    rows = svc.get_all_work_assignments(db, status=status, work_type=workType)
    return [_serialize_assignment(a) for a in rows]


@router.get("/user/{user_id}")
def list_assignments_for_user(user_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    rows = svc.get_work_assignments_by_multiple_users(db, [user_id])
    return [_serialize_assignment(a) for a in rows]


@router.get("/work/{work_type}/{work_id}")
def list_assignments_for_work_item(work_type: str, work_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    rows = svc.get_work_assignments_for_work_item(db, work_type, work_id)
    return [_serialize_assignment(a) for a in rows]


@router.get("/{assignment_id}")
def get_assignment(assignment_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return _serialize_assignment(svc.get_work_assignment(db, assignment_id))


@router.patch("/{assignment_id}")
def update_assignment(
    assignment_id: int,
    payload: WorkAssignmentUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    updates = payload.model_dump(exclude_unset=True, exclude={"assigned_user_ids", "assigned_users"})
    raw_ids = payload.user_id_input()
    if raw_ids is not None:
        updates["assigned_user_ids"] = parse_user_id_input(raw_ids, "assignedUserIds")

    if not is_admin(me):
        current = svc.get_work_assignment(db, assignment_id)
        if me.id not in svc.get_assignee(current).user_ids:
            raise HTTPException(status_code=403, detail="Forbidden")
        if set(updates) - ASSIGNEE_EDITABLE:
            raise HTTPException(status_code=403, detail="Only status and notes can be changed by assignees")

    assignment, previous_status = svc.update_work_assignment(
        db, assignment_id, updates, actor_id=me.id, actor_role=me.role
    )
    if previous_status:
        background_tasks.add_task(
            dispatch_assignment_notification, assignment.id, "status_changed", previous_status
        )
    return _serialize_assignment(assignment)


@router.delete("/{assignment_id}")
def delete_assignment(assignment_id: int, db: Session = Depends(get_db), me: User = Depends(require_roles("admin"))):
    deleted = svc.delete_work_assignment(db, assignment_id, actor_id=me.id, actor_role=me.role)
    if not deleted:
        raise HTTPException(status_code=404, detail="Work assignment not found")
    return {"success": True, "message": "Work assignment deleted successfully"}


@router.get("/{assignment_id}/team")
def get_team_status(assignment_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return team_status(db, assignment_id)


@router.get("/{assignment_id}/audit")
def get_assignment_audit(
    assignment_id: int,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
    _=Depends(require_roles("admin")),
):
    limit = min(max(1, limit), 500)
    rows = get_audit_logs(db, entity_type="work_assignment", entity_id=assignment_id, limit=limit, offset=max(0, offset))
    return [
        {
            "id": r.id,
            "action": r.action,
            "actorId": r.actor_id,
            "actorRole": r.actor_role,
            "source": r.source,
            "changes": r.changes_json,
            "context": r.context,
            "timestampUtc": r.timestamp_utc.isoformat(),
            "verified": verify_audit_log(r),
        }
        for r in rows
    ]
