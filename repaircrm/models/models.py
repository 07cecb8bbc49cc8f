from datetime import datetime, date
from typing import Optional

from sqlalchemy import (
    text,
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    JSON,
    Text,
    Index,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


ROLES = ("admin", "technician", "service_engineer")
WORK_TYPES = ("receipt", "service_complaint")
PRIORITIES = ("low", "medium", "high", "urgent")
ASSIGNMENT_STATUSES = ("pending", "in_progress", "completed", "cancelled")


def int_pk() -> Mapped[int]:
    return mapped_column(Integer, primary_key=True, autoincrement=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = int_pk()
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(30), nullable=False, index=True)  # admin|technician|service_engineer
    name: Mapped[Optional[str]] = mapped_column(String(255))
    mobile: Mapped[Optional[str]] = mapped_column(String(50), unique=True)  # WhatsApp/SMS target
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    address: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deleted_by: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    @property
    def display_name(self) -> str:
        return self.name or self.username or "Unknown User"

    @property
    def can_take_work(self) -> bool:
        return bool(self.is_active) and not self.is_deleted


# Work assignment & team check-in domain
# =====================


class WorkAssignment(Base):
    """Receipt or service complaint delegated to one or more users"""
    __tablename__ = "work_assignments"

    id: Mapped[int] = int_pk()
    assigned_by: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # Legacy primary assignee; always the first entry of assigned_users when that is set
    assigned_to: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    assigned_users: Mapped[Optional[str]] = mapped_column(Text)  # JSON array of user ids
    work_type: Mapped[str] = mapped_column(String(30), nullable=False)  # receipt|service_complaint
    work_id: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[str] = mapped_column(String(20), default="medium", nullable=False)  # low|medium|high|urgent
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False, index=True)  # pending|in_progress|completed|cancelled
    assignment_notes: Mapped[Optional[str]] = mapped_column(Text)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, index=True)

    checkins = relationship(
        "WorkCheckin",
        back_populates="assignment",
        cascade="all, delete-orphan",
        order_by="WorkCheckin.check_in_time.desc()",
    )

    __table_args__ = (
        Index("idx_work_assignments_work", "work_type", "work_id"),
    )


class WorkCheckin(Base):
    """Presence session of one user against one assignment"""
    __tablename__ = "work_checkins"

    id: Mapped[int] = int_pk()
    assignment_id: Mapped[int] = mapped_column(Integer, ForeignKey("work_assignments.id"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    checked_in_with: Mapped[Optional[str]] = mapped_column(Text)  # JSON array of user ids present together
    check_in_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    check_out_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    location: Mapped[Optional[str]] = mapped_column(Text)  # address or "lat, lon"
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    assignment = relationship("WorkAssignment", back_populates="checkins")
    user = relationship("User")

    # One open session per user per assignment
    __table_args__ = (
        Index(
            "uq_work_checkins_open_session",
            "assignment_id",
            "user_id",
            unique=True,
            sqlite_where=text("check_out_time IS NULL"),
            postgresql_where=text("check_out_time IS NULL"),
        ),
        Index("idx_work_checkins_user_time", "user_id", "check_in_time"),
    )


class AuditLog(Base):
    """Append-only audit log for assignment and check-in actions"""
    __tablename__ = "audit_logs"

    id: Mapped[int] = int_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # work_assignment|work_checkin|user
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|UPDATE|DELETE|CHECK_IN|CHECK_OUT
    actor_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
    )


class Notification(Base):
    """One outbound WhatsApp/SMS delivery attempt"""
    __tablename__ = "notifications"

    id: Mapped[int] = int_pk()
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # whatsapp|sms|log|none
    template_key: Mapped[Optional[str]] = mapped_column(String(100))
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sent|failed|skipped
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index('idx_notifications_user_status', 'user_id', 'status'),
        Index('idx_notifications_created', 'created_at'),
    )
