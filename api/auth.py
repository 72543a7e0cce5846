import logging
import uuid
from datetime import datetime
from typing import Optional

import jwt
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from api.security import (
    TokenConfigError, access_ttl, current_user_id, generate_token, hash_password,
    parse_token, refresh_ttl, verify_password,
)
from db.models import User
from db.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

# --- Schemas
class SignupIn(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    phone_number: Optional[str] = None

class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

class RefreshIn(BaseModel):
    refresh_token: str = Field(..., min_length=1)

class UserOut(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: str
    phone_number: Optional[str] = None
    created_at: datetime
    class Config:
        from_attributes = True

class AuthWithTokensOut(BaseModel):
    user: UserOut
    access_token: str
    refresh_token: str


def _issue_tokens(user: User) -> AuthWithTokensOut:
    try:
        access = generate_token(user.id, access_ttl())
        refresh = generate_token(user.id, refresh_ttl())
    except TokenConfigError:
        logger.error("JWT_SECRET not set; cannot issue tokens")
        raise HTTPException(500, "failed to create access token")
    return AuthWithTokensOut(user=UserOut.model_validate(user), access_token=access, refresh_token=refresh)


@router.post("/signup", response_model=AuthWithTokensOut, status_code=201)
def signup(body: SignupIn, db: Session = Depends(get_db)):
    user = User(
        id=str(uuid.uuid4()),
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        password_hash=hash_password(body.password),
        phone_number=body.phone_number,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(409, "email already exists")
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("signup failed")
        raise HTTPException(500, {"error": "db error", "details": str(e)})
    db.refresh(user)
    logger.info("user created user_id=%s", user.id)
    return _issue_tokens(user)


@router.post("/login", response_model=AuthWithTokensOut)
def login(body: LoginIn, db: Session = Depends(get_db)):
    try:
        user = db.query(User).filter(User.email == body.email).first()
    except SQLAlchemyError:
        logger.exception("login lookup failed")
        raise HTTPException(500, "db error")
    if not user or not verify_password(body.password, user.password_hash):
        raise HTTPException(401, "invalid credentials")
    return _issue_tokens(user)


@router.post("/token/refresh")
def refresh(body: RefreshIn):
    try:
        user_id = parse_token(body.refresh_token)
        access = generate_token(user_id, access_ttl())
    except TokenConfigError:
        logger.error("JWT_SECRET not set; cannot refresh")
        raise HTTPException(500, "failed to create access token")
    except jwt.InvalidTokenError:
        raise HTTPException(401, "invalid refresh token")
    # refresh tokens are not rotated
    return {"access_token": access, "refresh_token": body.refresh_token}


@router.get("/me")
def me(user_id: str = Depends(current_user_id)):
    return {"user_id": user_id}
