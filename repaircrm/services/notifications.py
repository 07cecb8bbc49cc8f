"""
Notification service for WhatsApp and SMS.
Delivery is best-effort: every failure is logged and recorded, never raised
to the business operation that triggered it.
"""
import re
from datetime import datetime
from typing import Optional, Dict, Tuple, List

import httpx
import structlog
from sqlalchemy.orm import Session

from ..models.models import Notification, User, WorkAssignment
from ..config import settings
from ..db import SessionLocal
from .assignees import assignee_from_columns


logger = structlog.get_logger(__name__)


def normalize_msisdn(raw: Optional[str]) -> str:
    """
    Normalize a mobile number for WhatsApp/SMS gateways.
    10-digit local numbers get the 91 country prefix; a leading 0 on an
    11-digit number is dropped first.
    """
    digits = re.sub(r"\D", "", raw or "")
    if len(digits) == 11 and digits.startswith("0"):
        digits = digits[1:]
    if len(digits) == 10:
        digits = f"91{digits}"
    return digits


class NotificationService:
    """WhatsApp Cloud API first, SMS gateway second, log-only when neither is configured."""

    def __init__(self, client: Optional[httpx.Client] = None):
        self._client = client

    def _post(self, url: str, headers: Dict[str, str], payload: Dict) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, headers=headers, json=payload)
        with httpx.Client(timeout=settings.notify_timeout_s) as client:
            return client.post(url, headers=headers, json=payload)

    @property
    def whatsapp_configured(self) -> bool:
        return bool(settings.whatsapp_access_token and settings.whatsapp_phone_number_id)

    @property
    def sms_configured(self) -> bool:
        return bool(settings.sms_api_url and settings.sms_api_key)

    def send_whatsapp_text(self, to: str, body: str) -> None:
        url = f"{settings.whatsapp_api_url.rstrip('/')}/{settings.whatsapp_phone_number_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": normalize_msisdn(to),
            "type": "text",
            "text": {"body": body},
        }
        response = self._post(url, {"Authorization": f"Bearer {settings.whatsapp_access_token}"}, payload)
        response.raise_for_status()

    def send_sms(self, to: str, body: str) -> None:
        payload = {
            "to": normalize_msisdn(to),
            "from": settings.sms_sender_id,
            "text": body,
        }
        response = self._post(settings.sms_api_url, {"Authorization": f"Bearer {settings.sms_api_key}"}, payload)
        response.raise_for_status()

    def send_text(self, to: str, body: str) -> Tuple[str, Optional[str]]:
        """
        Deliver a plain text message.

        Returns:
            (channel, error) where error is None on success. channel is
            "none" when every channel is switched off.
        """
        if not normalize_msisdn(to):
            return "none", "No mobile number"

        error = None
        if settings.enable_whatsapp and self.whatsapp_configured:
            try:
                self.send_whatsapp_text(to, body)
                return "whatsapp", None
            except httpx.HTTPError as exc:
                error = f"whatsapp: {exc}"
                logger.warning("whatsapp_send_failed", to=to, error=str(exc))

        if settings.enable_sms:
            if not self.sms_configured:
                logger.info("sms_not_configured", to=to, message=body)
                return "log", error
            try:
                self.send_sms(to, body)
                return "sms", None
            except httpx.HTTPError as exc:
                logger.warning("sms_send_failed", to=to, error=str(exc))
                return "sms", f"{error}; sms: {exc}" if error else f"sms: {exc}"

        return ("whatsapp" if error else "none"), error or "All notification channels disabled"


_default_service: Optional[NotificationService] = None


def default_service() -> NotificationService:
    global _default_service
    if _default_service is None:
        _default_service = NotificationService()
    return _default_service


def create_notification(
    db: Session,
    user: User,
    template_key: str,
    body: str,
    payload_json: Optional[Dict] = None,
    service: Optional[NotificationService] = None,
) -> Notification:
    """
    Send one message to a user and record the attempt.
    """
    service = service or default_service()
    if not user.mobile:
        channel, error = "none", "No mobile number"
    else:
        channel, error = service.send_text(user.mobile, body)

    if error is None:
        status = "sent"
    elif channel == "none":
        status = "skipped"
    else:
        status = "failed"

    notification = Notification(
        user_id=user.id,
        channel=channel,
        template_key=template_key,
        payload_json={**(payload_json or {}), "body": body},
        status=status,
        error_message=error,
        sent_at=datetime.utcnow() if status == "sent" else None,
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


def _assignment_payload(assignment: WorkAssignment) -> Dict:
    return {
        "assignment_id": assignment.id,
        "work_type": assignment.work_type,
        "work_id": assignment.work_id,
        "priority": assignment.priority,
        "status": assignment.status,
    }


def _work_label(assignment: WorkAssignment) -> str:
    kind = "Receipt" if assignment.work_type == "receipt" else "Service complaint"
    return f"{kind} #{assignment.work_id}"


def _recipients(db: Session, assignment: WorkAssignment) -> List[User]:
    user_ids = assignee_from_columns(assignment.assigned_to, assignment.assigned_users).user_ids
    users = db.query(User).filter(User.id.in_(user_ids)).all()
    by_id = {u.id: u for u in users}
    return [by_id[uid] for uid in user_ids if uid in by_id and not by_id[uid].is_deleted]


def notify_assignment_created(
    db: Session,
    assignment: WorkAssignment,
    service: Optional[NotificationService] = None,
) -> List[Notification]:
    """Tell every assignee about new work. Never raises."""
    sent = []
    assignment_id = assignment.id
    try:
        body = f"New work assigned: {_work_label(assignment)} (priority: {assignment.priority})"
        if assignment.due_date:
            body += f", due {assignment.due_date.isoformat()}"
        for user in _recipients(db, assignment):
            sent.append(
                create_notification(db, user, "work_assignment_created", body, _assignment_payload(assignment), service)
            )
    except Exception as exc:
        db.rollback()
        logger.warning("notification_failed", notify_event="work_assignment_created", assignment_id=assignment_id, error=str(exc), exc_info=True)
    return sent


def notify_assignment_status_changed(
    db: Session,
    assignment: WorkAssignment,
    old_status: str,
    service: Optional[NotificationService] = None,
) -> List[Notification]:
    """Tell every assignee about a status change. Never raises."""
    sent = []
    assignment_id = assignment.id
    try:
        body = (
            f"{_work_label(assignment)} status changed from "
            f"{old_status.replace('_', ' ')} to {assignment.status.replace('_', ' ')}"
        )
        payload = {**_assignment_payload(assignment), "old_status": old_status}
        for user in _recipients(db, assignment):
            sent.append(
                create_notification(db, user, "work_assignment_status", body, payload, service)
            )
    except Exception as exc:
        db.rollback()
        logger.warning("notification_failed", notify_event="work_assignment_status", assignment_id=assignment_id, error=str(exc), exc_info=True)
    return sent


def dispatch_assignment_notification(assignment_id: int, event: str, old_status: Optional[str] = None) -> None:
    """
    Background-task entry point. Runs after the response with its own session,
    so the request transaction is already committed.
    """
    db = SessionLocal()
    try:
        assignment = db.query(WorkAssignment).filter(WorkAssignment.id == assignment_id).first()
        if not assignment:
            return
        if event == "created":
            notify_assignment_created(db, assignment)
        elif event == "status_changed" and old_status:
            notify_assignment_status_changed(db, assignment, old_status)
    except Exception as exc:
        logger.warning("notification_dispatch_failed", assignment_id=assignment_id, notify_event=event, error=str(exc), exc_info=True)
    finally:
        db.close()
