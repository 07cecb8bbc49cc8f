"""
Assignee encoding for work assignments.

Business logic works with a tagged variant (SingleAssignee | MultipleAssignees).
The legacy storage keeps two columns: assigned_to (scalar) and assigned_users
(JSON text). Conversion between the two happens only here.
"""
import json
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple, Union

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from .errors import ValidationError


_USER_ID_LIST = TypeAdapter(List[int])


@dataclass(frozen=True)
class SingleAssignee:
    user_id: int

    @property
    def user_ids(self) -> List[int]:
        return [self.user_id]

    def primary_assignee(self) -> int:
        return self.user_id


@dataclass(frozen=True)
class MultipleAssignees:
    members: Tuple[int, ...]

    def __post_init__(self):
        if not self.members:
            raise ValueError("MultipleAssignees needs at least one user id")

    @property
    def user_ids(self) -> List[int]:
        return list(self.members)

    def primary_assignee(self) -> int:
        return self.members[0]


Assignee = Union[SingleAssignee, MultipleAssignees]


def decode_user_ids(raw) -> Optional[List[int]]:
    """
    Decode a JSON-encoded list of user ids.

    Returns None when the value is absent, blank or not a JSON array of
    integers. "[]" decodes to an empty list, which is distinct from None.
    """
    if raw is None:
        return None
    try:
        if isinstance(raw, (list, tuple)):
            return _USER_ID_LIST.validate_python(list(raw))
        if not isinstance(raw, (str, bytes)) or not raw.strip():
            return None
        return _USER_ID_LIST.validate_json(raw)
    except PydanticValidationError:
        return None


def encode_user_ids(user_ids: Optional[Iterable[int]]) -> Optional[str]:
    if user_ids is None:
        return None
    return json.dumps([int(u) for u in user_ids])


def dedupe_user_ids(user_ids: Iterable[int]) -> List[int]:
    seen = set()
    ordered = []
    for uid in user_ids:
        if uid in seen:
            continue
        seen.add(uid)
        ordered.append(uid)
    return ordered


def parse_user_id_input(value, field: str) -> Optional[List[int]]:
    """
    Accept a list of ids or a JSON-encoded string of one (legacy clients send both).
    Unlike decode_user_ids this is strict: malformed input is a validation error.
    """
    if value is None:
        return None
    if isinstance(value, str):
        if not value.strip():
            return None
        decoded = decode_user_ids(value)
        if decoded is None:
            raise ValidationError(
                f"{field} must be a list of user ids",
                details=[{"field": field, "message": "expected a JSON array of integers"}],
            )
        return decoded
    try:
        return _USER_ID_LIST.validate_python(list(value))
    except (TypeError, PydanticValidationError):
        raise ValidationError(
            f"{field} must be a list of user ids",
            details=[{"field": field, "message": "expected a list of integers"}],
        )


def assignee_from_input(assigned_to: Optional[int], assigned_user_ids: Optional[List[int]]) -> Assignee:
    """Build the variant from request input; a list wins over the scalar."""
    if assigned_user_ids is not None:
        ids = dedupe_user_ids(assigned_user_ids)
        if not ids:
            raise ValidationError(
                "At least one user must be assigned",
                details=[{"field": "assignedUserIds", "message": "empty selection"}],
            )
        return MultipleAssignees(tuple(ids))
    if assigned_to is None:
        raise ValidationError(
            "At least one user must be assigned",
            details=[{"field": "assignedTo", "message": "required when assignedUserIds is absent"}],
        )
    return SingleAssignee(int(assigned_to))


def assignee_from_columns(assigned_to: int, assigned_users: Optional[str]) -> Assignee:
    """
    Read side. null, "[]" and malformed JSON all fall back to the legacy
    single assignee column.
    """
    ids = decode_user_ids(assigned_users)
    if ids:
        return MultipleAssignees(tuple(ids))
    return SingleAssignee(assigned_to)


def assignee_to_columns(assignee: Assignee) -> Tuple[int, Optional[str]]:
    if isinstance(assignee, MultipleAssignees):
        return assignee.primary_assignee(), encode_user_ids(assignee.members)
    return assignee.user_id, None
