from datetime import datetime
from typing import List, Optional, Union

from .base import CamelModel


class WorkCheckinCreate(CamelModel):
    assignment_id: int
    user_id: Optional[int] = None  # defaults to the caller
    location: Optional[str] = None
    notes: Optional[str] = None
    checked_in_with: Optional[Union[List[int], str]] = None
    check_in_time: Optional[datetime] = None


class WorkCheckinCheckout(CamelModel):
    notes: Optional[str] = None
    check_out_time: Optional[datetime] = None
