from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import ROLES, User
from ..auth.security import (
    get_current_user,
    get_password_hash,
    is_admin,
    password_problems,
    require_roles,
    verify_password,
)
from ..schemas.auth import PasswordChange, UserCreate, UserUpdate
from ..services.audit import compute_diff, create_audit_log
from ..logging import structlog


router = APIRouter(prefix="/users", tags=["users"])
logger = structlog.get_logger(__name__)


def _user_to_dict(u: User) -> dict:
    return {
        "id": u.id,
        "username": u.username,
        "role": u.role,
        "name": u.name,
        "displayName": u.display_name,
        "mobile": u.mobile,
        "email": u.email,
        "address": u.address,
        "isActive": u.is_active,
        "isDeleted": u.is_deleted,
        "deletedAt": u.deleted_at.isoformat() if u.deleted_at else None,
        "createdAt": u.created_at.isoformat() if u.created_at else None,
    }


def _audit_fields(u: User) -> dict:
    return {
        "username": u.username,
        "role": u.role,
        "name": u.name,
        "mobile": u.mobile,
        "email": u.email,
        "address": u.address,
        "is_active": u.is_active,
        "is_deleted": u.is_deleted,
    }


def _get_user_or_404(db: Session, user_id: int) -> User:
    u = db.query(User).filter(User.id == user_id).first()
    if not u:
        raise HTTPException(status_code=404, detail="User not found")
    return u


def _check_role(role: str) -> None:
    if role not in ROLES:
        raise HTTPException(status_code=400, detail=f"Invalid role '{role}'")


def _check_unique(db: Session, *, username=None, email=None, mobile=None, exclude_id: Optional[int] = None) -> None:
    checks = (
        ("username", User.username, username, "Username already exists"),
        ("email", User.email, email, "Email already exists"),
        ("mobile", User.mobile, mobile, "Mobile number already exists"),
    )
    for _field, column, value, message in checks:
        if value is None:
            continue
        q = db.query(User.id).filter(column == value)
        if exclude_id is not None:
            q = q.filter(User.id != exclude_id)
        if q.first():
            raise HTTPException(status_code=400, detail=message)


def _check_password(password: str) -> None:
    problems = password_problems(password)
    if problems:
        raise HTTPException(status_code=400, detail=problems[0])


@router.get("")
def list_users(
    role: Optional[str] = None,
    includeDeleted: bool = False,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    query = db.query(User)
    if role:
        query = query.filter(User.role == role)
    if not includeDeleted:
        query = query.filter(User.is_deleted.is_(False))
    rows = query.order_by(User.created_at.desc(), User.id.desc()).all()
    return [_user_to_dict(u) for u in rows]


@router.get("/{user_id}")
def get_user(user_id: int, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return _user_to_dict(_get_user_or_404(db, user_id))


@router.post("", status_code=201)
def create_user(payload: UserCreate, db: Session = Depends(get_db), me: User = Depends(require_roles("admin"))):
    _check_role(payload.role)
    _check_password(payload.password)
    _check_unique(db, username=payload.username, email=payload.email, mobile=payload.mobile)

    u = User(
        username=payload.username,
        password_hash=get_password_hash(payload.password),
        role=payload.role,
        name=payload.name,
        mobile=payload.mobile,
        email=payload.email,
        address=payload.address,
        is_active=True,
        is_deleted=False,
        created_at=datetime.utcnow(),
    )
    db.add(u)
    db.flush()
    create_audit_log(
        db=db,
        entity_type="user",
        entity_id=u.id,
        action="CREATE",
        actor_id=me.id,
        actor_role=me.role,
        source="api",
        changes_json={"after": _audit_fields(u)},
    )
    db.commit()
    db.refresh(u)
    logger.info("user_created", user_id=u.id, role=u.role)
    return _user_to_dict(u)


@router.patch("/{user_id}")
def update_user(user_id: int, payload: UserUpdate, db: Session = Depends(get_db), me: User = Depends(require_roles("admin"))):
    u = _get_user_or_404(db, user_id)
    updates = payload.model_dump(exclude_unset=True)
    if updates.get("role") is not None:
        _check_role(updates["role"])
    _check_unique(
        db,
        username=updates.get("username"),
        email=updates.get("email"),
        mobile=updates.get("mobile"),
        exclude_id=u.id,
    )

    before = _audit_fields(u)
    for field in ("username", "role", "is_active"):
        if updates.get(field) is not None:
            setattr(u, field, updates[field])
    for field in ("name", "mobile", "email", "address"):
        if field in updates:
            setattr(u, field, updates[field])

    diff = compute_diff(before, _audit_fields(u))
    if diff:
        create_audit_log(
            db=db,
            entity_type="user",
            entity_id=u.id,
            action="UPDATE",
            actor_id=me.id,
            actor_role=me.role,
            source="api",
            changes_json=diff,
        )
    db.commit()
    db.refresh(u)
    return _user_to_dict(u)


@router.delete("/{user_id}")
def delete_user(user_id: int, db: Session = Depends(get_db), me: User = Depends(require_roles("admin"))):
    """Soft delete: the row stays so assignments and check-ins keep their history."""
    u = _get_user_or_404(db, user_id)
    if u.id == me.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    if u.is_deleted:
        return {"success": True, "message": "User already deleted"}

    before = _audit_fields(u)
    u.is_deleted = True
    u.is_active = False
    u.deleted_at = datetime.utcnow()
    u.deleted_by = me.id
    create_audit_log(
        db=db,
        entity_type="user",
        entity_id=u.id,
        action="DELETE",
        actor_id=me.id,
        actor_role=me.role,
        source="api",
        changes_json=compute_diff(before, _audit_fields(u)),
    )
    db.commit()
    logger.info("user_soft_deleted", user_id=u.id, deleted_by=me.id)
    return {"success": True, "message": "User deleted successfully"}


@router.patch("/{user_id}/deactivate")
def deactivate_user(user_id: int, db: Session = Depends(get_db), me: User = Depends(require_roles("admin"))):
    u = _get_user_or_404(db, user_id)
    if u.is_active:
        u.is_active = False
        create_audit_log(
            db=db,
            entity_type="user",
            entity_id=u.id,
            action="UPDATE",
            actor_id=me.id,
            actor_role=me.role,
            source="api",
            changes_json={"is_active": {"before": True, "after": False}},
        )
        db.commit()
        db.refresh(u)
    return _user_to_dict(u)


@router.patch("/{user_id}/change-password")
def change_password(user_id: int, payload: PasswordChange, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    if me.id != user_id and not is_admin(me):
        raise HTTPException(status_code=403, detail="Forbidden")
    u = _get_user_or_404(db, user_id)
    # Admins resetting another account skip the current-password check
    if me.id == user_id:
        if not payload.current_password or not verify_password(payload.current_password, u.password_hash):
            raise HTTPException(status_code=400, detail="Current password is incorrect")
    _check_password(payload.new_password)
    u.password_hash = get_password_hash(payload.new_password)
    db.commit()
    logger.info("user_password_changed", user_id=u.id, changed_by=me.id)
    return {"success": True, "message": "Password changed successfully"}
