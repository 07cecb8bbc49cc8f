from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import (
    ASSIGNMENT_STATUSES,
    PRIORITIES,
    WORK_TYPES,
    User,
    WorkAssignment,
    WorkCheckin,
)
from .assignees import (
    Assignee,
    MultipleAssignees,
    assignee_from_columns,
    assignee_from_input,
    assignee_to_columns,
)
from .audit import compute_diff, create_audit_log
from .errors import ConflictError, CrmError, NotFoundError, StatusTransitionError, ValidationError


logger = structlog.get_logger(__name__)


# Legal status edges; completed and cancelled are terminal
VALID_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("in_progress", "cancelled"),
    "in_progress": ("completed", "cancelled"),
    "completed": (),
    "cancelled": (),
}


def check_status_transition(current: str, target: str, strict: Optional[bool] = None) -> None:
    if target not in ASSIGNMENT_STATUSES:
        raise ValidationError(
            f"Invalid status '{target}'",
            details=[{"field": "status", "allowed": list(ASSIGNMENT_STATUSES)}],
        )
    if strict is None:
        strict = settings.strict_status_transitions
    if not strict or current == target:
        return
    if target not in VALID_TRANSITIONS.get(current, ()):
        raise StatusTransitionError(current, target)


def _require_choice(value: Optional[str], choices: Iterable[str], field: str) -> str:
    choices = tuple(choices)
    if value not in choices:
        raise ValidationError(
            f"Invalid {field} '{value}'",
            details=[{"field": field, "allowed": list(choices)}],
        )
    return value


def parse_due_date(value: Any) -> Optional[date]:
    """ISO date or datetime string, date, datetime, or empty -> date or None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw.split("T")[0])
    except ValueError:
        raise ValidationError(
            "Invalid dueDate format",
            details=[{"field": "dueDate", "message": "expected YYYY-MM-DD"}],
        )


def _ensure_assignable_users(db: Session, user_ids: List[int], field: str) -> None:
    if not user_ids:
        return
    users = {u.id: u for u in db.query(User).filter(User.id.in_(user_ids)).all()}
    issues = []
    for uid in user_ids:
        user = users.get(uid)
        if user is None:
            issues.append({"field": field, "userId": uid, "message": "user not found"})
        elif not user.can_take_work:
            issues.append({"field": field, "userId": uid, "message": "user is inactive or deleted"})
    if issues:
        raise ValidationError("One or more users cannot be assigned", details=issues)


def _ensure_user_exists(db: Session, user_id: Optional[int], field: str) -> None:
    if user_id is None:
        raise ValidationError(f"{field} is required", details=[{"field": field, "message": "required"}])
    if not db.query(User.id).filter(User.id == user_id).first():
        raise ValidationError(f"{field} references an unknown user", details=[{"field": field, "userId": user_id}])


def get_assignee(assignment: WorkAssignment) -> Assignee:
    return assignee_from_columns(assignment.assigned_to, assignment.assigned_users)


def snapshot(assignment: WorkAssignment) -> Dict[str, Any]:
    """JSON-safe view used for audit diffs."""
    return {
        "assigned_by": assignment.assigned_by,
        "assigned_to": assignment.assigned_to,
        "assigned_users": assignment.assigned_users,
        "work_type": assignment.work_type,
        "work_id": assignment.work_id,
        "priority": assignment.priority,
        "status": assignment.status,
        "assignment_notes": assignment.assignment_notes,
        "due_date": assignment.due_date.isoformat() if assignment.due_date else None,
        "started_at": assignment.started_at.isoformat() if assignment.started_at else None,
        "completed_at": assignment.completed_at.isoformat() if assignment.completed_at else None,
    }


def create_work_assignment(
    db: Session,
    *,
    assigned_by: Optional[int],
    work_type: Optional[str],
    work_id: Optional[int],
    assigned_to: Optional[int] = None,
    assigned_user_ids: Optional[List[int]] = None,
    priority: Optional[str] = "medium",
    assignment_notes: Optional[str] = None,
    due_date: Any = None,
    actor_role: Optional[str] = None,
) -> WorkAssignment:
    if not work_type or work_id is None:
        missing = [f for f, v in (("workType", work_type), ("workId", work_id)) if v in (None, "")]
        raise ValidationError(
            "workType and workId are required",
            details=[{"field": f, "message": "required"} for f in missing],
        )
    _require_choice(work_type, WORK_TYPES, "workType")
    priority = _require_choice(priority or "medium", PRIORITIES, "priority")
    _ensure_user_exists(db, assigned_by, "assignedBy")

    assignee = assignee_from_input(assigned_to, assigned_user_ids)
    _ensure_assignable_users(db, assignee.user_ids, "assignedUserIds" if isinstance(assignee, MultipleAssignees) else "assignedTo")
    primary, encoded = assignee_to_columns(assignee)

    assignment = WorkAssignment(
        assigned_by=assigned_by,
        assigned_to=primary,
        assigned_users=encoded,
        work_type=work_type,
        work_id=int(work_id),
        priority=priority,
        status="pending",
        assignment_notes=assignment_notes or None,
        due_date=parse_due_date(due_date),
        created_at=datetime.utcnow(),
    )
    db.add(assignment)
    db.flush()

    create_audit_log(
        db=db,
        entity_type="work_assignment",
        entity_id=assignment.id,
        action="CREATE",
        actor_id=assigned_by,
        actor_role=actor_role,
        source="api",
        changes_json={"after": snapshot(assignment)},
        context={"work_type": work_type, "work_id": int(work_id)},
    )
    db.commit()
    db.refresh(assignment)
    logger.info(
        "work_assignment_created",
        assignment_id=assignment.id,
        assigned_to=assignment.assigned_to,
        assigned_user_ids=assignee.user_ids,
        work_type=work_type,
        work_id=assignment.work_id,
    )
    return assignment


def get_work_assignment(db: Session, assignment_id: int) -> WorkAssignment:
    assignment = db.query(WorkAssignment).filter(WorkAssignment.id == assignment_id).first()
    if not assignment:
        raise NotFoundError("Work assignment not found")
    return assignment


def _newest_first(query):
    return query.order_by(WorkAssignment.created_at.desc(), WorkAssignment.id.desc())


def get_all_work_assignments(
    db: Session,
    status: Optional[str] = None,
    work_type: Optional[str] = None,
) -> List[WorkAssignment]:
    query = db.query(WorkAssignment)
    if status:
        query = query.filter(WorkAssignment.status == status)
    if work_type:
        query = query.filter(WorkAssignment.work_type == work_type)
    return _newest_first(query).all()


def get_work_assignments_by_user(db: Session, user_id: int) -> List[WorkAssignment]:
    """Legacy single-assignee lookup on assigned_to."""
    return _newest_first(db.query(WorkAssignment).filter(WorkAssignment.assigned_to == user_id)).all()


def get_work_assignments_by_multiple_users(db: Session, user_ids: Iterable[int]) -> List[WorkAssignment]:
    """
    Assignments touching any of user_ids.

    Matches against the decoded assigned_users list; rows whose list is
    null, empty or unreadable fall back to assigned_to.
    """
    wanted = set(user_ids)
    if not wanted:
        return []
    # Substring match only narrows the candidates; the decoded list decides
    candidates = _newest_first(
        db.query(WorkAssignment).filter(
            or_(
                WorkAssignment.assigned_to.in_(wanted),
                *[WorkAssignment.assigned_users.like(f"%{uid}%") for uid in wanted],
            )
        )
    ).all()
    return [a for a in candidates if wanted.intersection(get_assignee(a).user_ids)]


def get_work_assignments_for_work_item(db: Session, work_type: str, work_id: int) -> List[WorkAssignment]:
    _require_choice(work_type, WORK_TYPES, "workType")
    query = db.query(WorkAssignment).filter(
        WorkAssignment.work_type == work_type,
        WorkAssignment.work_id == work_id,
    )
    return _newest_first(query).all()


def _apply_updates(db: Session, assignment: WorkAssignment, updates: Dict[str, Any]) -> Optional[str]:
    previous_status = None

    if updates.get("assigned_user_ids") is not None or updates.get("assigned_to") is not None:
        assignee = assignee_from_input(updates.get("assigned_to"), updates.get("assigned_user_ids"))
        current_ids = set(get_assignee(assignment).user_ids)
        # Only newly added users must be assignable
        _ensure_assignable_users(
            db,
            [uid for uid in assignee.user_ids if uid not in current_ids],
            "assignedUserIds" if isinstance(assignee, MultipleAssignees) else "assignedTo",
        )
        assignment.assigned_to, assignment.assigned_users = assignee_to_columns(assignee)

    if updates.get("work_type") is not None:
        assignment.work_type = _require_choice(updates["work_type"], WORK_TYPES, "workType")
    if updates.get("work_id") is not None:
        assignment.work_id = int(updates["work_id"])
    if updates.get("priority") is not None:
        assignment.priority = _require_choice(updates["priority"], PRIORITIES, "priority")
    if "assignment_notes" in updates:
        assignment.assignment_notes = updates["assignment_notes"] or None
    if "due_date" in updates:
        assignment.due_date = parse_due_date(updates["due_date"])

    new_status = updates.get("status")
    if new_status is not None:
        check_status_transition(assignment.status, new_status)
        if new_status != assignment.status:
            previous_status = assignment.status
            now = datetime.utcnow()
            assignment.status = new_status
            if previous_status == "completed":
                # Reopened jobs are no longer complete
                assignment.completed_at = None
            if new_status == "in_progress" and assignment.started_at is None:
                assignment.started_at = now
            elif new_status == "completed":
                assignment.completed_at = now
                if assignment.started_at is None:
                    assignment.started_at = now
    return previous_status


def update_work_assignment(
    db: Session,
    assignment_id: int,
    updates: Dict[str, Any],
    *,
    actor_id: Optional[int] = None,
    actor_role: Optional[str] = None,
) -> Tuple[WorkAssignment, Optional[str]]:
    """
    Apply a partial update.

    Returns:
        (assignment, previous_status) where previous_status is None unless
        the status actually changed.
    """
    assignment = get_work_assignment(db, assignment_id)
    before = snapshot(assignment)
    try:
        previous_status = _apply_updates(db, assignment, updates)
    except CrmError:
        db.rollback()
        raise

    diff = compute_diff(before, snapshot(assignment))
    if diff:
        create_audit_log(
            db=db,
            entity_type="work_assignment",
            entity_id=assignment.id,
            action="UPDATE",
            actor_id=actor_id,
            actor_role=actor_role,
            source="api",
            changes_json=diff,
        )
    db.commit()
    db.refresh(assignment)
    if previous_status:
        logger.info(
            "work_assignment_status_changed",
            assignment_id=assignment.id,
            old_status=previous_status,
            new_status=assignment.status,
        )
    return assignment, previous_status



def delete_work_assignment(
    db: Session,
    assignment_id: int,
    *,
    actor_id: Optional[int] = None,
    actor_role: Optional[str] = None,
) -> bool:
    """
    Delete an assignment and its closed check-ins.

    Returns False when no such assignment exists. Refuses while any
    check-in on it is still open.
    """
    assignment = db.query(WorkAssignment).filter(WorkAssignment.id == assignment_id).first()
    if not assignment:
        return False

    open_count = (
        db.query(WorkCheckin)
        .filter(WorkCheckin.assignment_id == assignment_id, WorkCheckin.check_out_time.is_(None))
        .count()
    )
    if open_count:
        raise ConflictError(
            "Cannot delete a work assignment while users are checked in",
            details=[{"openCheckins": open_count}],
        )

    create_audit_log(
        db=db,
        entity_type="work_assignment",
        entity_id=assignment.id,
        action="DELETE",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api",
        changes_json={"before": snapshot(assignment)},
    )
    db.delete(assignment)
    db.commit()
    logger.info("work_assignment_deleted", assignment_id=assignment_id)
    return True
