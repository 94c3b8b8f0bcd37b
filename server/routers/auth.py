"""
Accounts: registration, login, profile and password management.
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

import auth
import config
from database import get_db
from errors import AppError
from limiter import limiter
from models import User
from schemas import (
    AuthResponse, ChangePasswordRequest, LoginRequest, PasswordResetConfirm, PasswordResetRequest,
    ProfileUpdateRequest, RegisterRequest, UserInfo,
)
from services.analysis import record_event

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


def _auth_response(user: User) -> AuthResponse:
    token, expires_at = auth.create_access_token(user.id)
    return AuthResponse(user=UserInfo.model_validate(user), token=token, expires_at=expires_at)


@router.post("/api/auth/register", response_model=AuthResponse, status_code=201)
@limiter.limit("10/minute")
def register(request: Request, body: RegisterRequest, db: Session = Depends(get_db)):
    """Create an account on the free plan and sign it in."""
    auth.validate_password(body.password)
    if db.query(User).filter(User.email == body.email).first():
        raise AppError("CONFLICT", "An account with this email already exists.")

    user = User(
        email=body.email,
        password_hash=auth.hash_password(body.password),
        first_name=body.first_name,
        last_name=body.last_name,
    )
    db.add(user)
    db.flush()
    record_event(db, "user_registered", "user", user_id=user.id)
    db.commit()
    logger.info(f"New account {user.id}", extra={"user_id": user.id})
    return _auth_response(user)


@router.post("/api/auth/login", response_model=AuthResponse)
@limiter.limit("20/minute")
def login(request: Request, body: LoginRequest, db: Session = Depends(get_db)):
    user = auth.authenticate(db, body.email, body.password)
    return _auth_response(user)


@router.get("/api/auth/user", response_model=UserInfo)
def current_user(user: User = Depends(auth.get_current_user)):
    return user


@router.put("/api/user/profile", response_model=UserInfo)
def update_profile(body: ProfileUpdateRequest, user: User = Depends(auth.get_current_user),
                   db: Session = Depends(get_db)):
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(user, field, value)
    db.commit()
    return user


@router.post("/api/auth/change-password")
def change_password(body: ChangePasswordRequest, user: User = Depends(auth.get_current_user),
                    db: Session = Depends(get_db)):
    if not auth.verify_password(body.current_password, user.password_hash):
        raise AppError("INVALID_CREDENTIALS", "Current password is incorrect.")
    auth.validate_password(body.new_password)
    user.password_hash = auth.hash_password(body.new_password)
    db.commit()
    return {"success": True}


@router.post("/api/auth/request-reset")
@limiter.limit("5/minute")
def request_reset(request: Request, body: PasswordResetRequest, db: Session = Depends(get_db)):
    """Always succeeds so the response does not reveal which emails exist."""
    user = db.query(User).filter(User.email == body.email.strip().lower()).first()
    if user:
        token = auth.create_reset_token(db, user)
        # Email delivery is not wired up; the link goes to the log
        logger.info(f"Password reset link: {config.APP_URL}/reset-password?token={token}",
                    extra={"user_id": user.id})
    return {"success": True, "message": "If an account exists for this email, a reset link has been sent."}


@router.post("/api/auth/reset-password")
@limiter.limit("10/minute")
def reset_password(request: Request, body: PasswordResetConfirm, db: Session = Depends(get_db)):
    auth.reset_password(db, body.token, body.new_password)
    return {"success": True}
