from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import User
from ..schemas.auth import LoginRequest, TokenResponse, UserOut
from .security import verify_password, create_access_token, get_current_user
from ..logging import structlog


router = APIRouter(prefix="/auth", tags=["auth"])
logger = structlog.get_logger(__name__)


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    identifier = req.username.strip()
    user = db.query(User).filter(
        (User.username == identifier)
        | (User.email == identifier)
        | (User.mobile == identifier)
    ).first()
    if not user or not verify_password(req.password, user.password_hash):
        logger.info("login_failed", identifier=identifier)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.can_take_work:
        logger.info("login_rejected_inactive", user_id=user.id)
        raise HTTPException(
            status_code=401,
            detail="Account is deactivated or deleted. Please contact administrator.",
        )
    access = create_access_token(user.id, role=user.role)
    logger.info("login_succeeded", user_id=user.id)
    return TokenResponse(access_token=access, user=UserOut.model_validate(user, from_attributes=True))


@router.get("/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)):
    return UserOut.model_validate(user, from_attributes=True)
