from typing import Optional

from pydantic import EmailStr, Field, field_validator

from .base import CamelModel


class LoginRequest(CamelModel):
    username: str  # username, email or mobile
    password: str


class UserOut(CamelModel):
    id: int
    username: str
    role: str
    name: Optional[str] = None
    mobile: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True
    is_deleted: bool = False


class TokenResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut


class UserCreate(CamelModel):
    username: str = Field(min_length=3, max_length=100)
    password: str
    role: str
    name: Optional[str] = None
    mobile: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None

    @field_validator("name", "mobile", "email", "address", mode="before")
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class UserUpdate(CamelModel):
    username: Optional[str] = Field(default=None, min_length=3, max_length=100)
    role: Optional[str] = None
    name: Optional[str] = None
    mobile: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("name", "mobile", "email", "address", mode="before")
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class PasswordChange(CamelModel):
    current_password: Optional[str] = None  # not required when an admin resets someone else's
    new_password: str
