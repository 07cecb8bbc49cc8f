from typing import List, Optional, Union

from pydantic import Field

from .base import CamelModel


# Legacy clients send assignee lists JSON-encoded inside a string
UserIdList = Union[List[int], str]


class WorkAssignmentCreate(CamelModel):
    work_type: Optional[str] = None
    work_id: Optional[int] = None
    assigned_by: Optional[int] = None
    assigned_to: Optional[int] = None
    assigned_user_ids: Optional[UserIdList] = None
    assigned_users: Optional[UserIdList] = None
    priority: Optional[str] = "medium"
    assignment_notes: Optional[str] = None
    due_date: Optional[str] = Field(default=None, description="YYYY-MM-DD")

    def user_id_input(self):
        return self.assigned_user_ids if self.assigned_user_ids is not None else self.assigned_users


class WorkAssignmentUpdate(CamelModel):
    assigned_to: Optional[int] = None
    assigned_user_ids: Optional[UserIdList] = None
    assigned_users: Optional[UserIdList] = None
    work_type: Optional[str] = None
    work_id: Optional[int] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    assignment_notes: Optional[str] = None
    due_date: Optional[str] = None

    def user_id_input(self):
        return self.assigned_user_ids if self.assigned_user_ids is not None else self.assigned_users
