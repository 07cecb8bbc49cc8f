"""
Domain errors raised by the work assignment and check-in services.
Routes never build HTTP responses for these by hand; the handler
registered in main.py maps each class to its status code.
"""
from typing import Any, Dict, List, Optional


class CrmError(Exception):
    """Base class for business-rule failures."""
    status_code = 400

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        self.message = message
        self.details = details or []
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(CrmError):
    status_code = 400


class StatusTransitionError(ValidationError):
    """Raised when an assignment status change is not a legal edge."""

    def __init__(self, current_status: str, target_status: str):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Cannot change status from '{current_status}' to '{target_status}'",
            details=[{"field": "status", "current": current_status, "requested": target_status}],
        )


class NotFoundError(CrmError):
    status_code = 404


class ConflictError(CrmError):
    status_code = 409
