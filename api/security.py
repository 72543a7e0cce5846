import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Header, HTTPException, Request

logger = logging.getLogger(__name__)

API_KEY = os.getenv("API_KEY", "my-secret-key")

DEFAULT_ACCESS_TTL = timedelta(minutes=15)
DEFAULT_REFRESH_TTL = timedelta(days=30)


class TokenConfigError(RuntimeError):
    """JWT_SECRET is not configured."""


def check_key(x_api_key: Optional[str] = Header(None)) -> None:
    """Raise 401 if header doesn't match."""
    if not x_api_key or x_api_key != API_KEY:
        raise HTTPException(status_code=401, detail="invalid API key")


# --- passwords

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


# --- tokens

def _secret() -> str:
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise TokenConfigError("JWT_SECRET not set")
    return secret


def _ttl_from_env(name: str, unit: str, default: timedelta) -> timedelta:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        n = int(raw)
    except ValueError:
        return default
    if n <= 0:
        return default
    return timedelta(**{unit: n})


def access_ttl() -> timedelta:
    return _ttl_from_env("ACCESS_TTL_MINUTES", "minutes", DEFAULT_ACCESS_TTL)


def refresh_ttl() -> timedelta:
    return _ttl_from_env("REFRESH_TTL_DAYS", "days", DEFAULT_REFRESH_TTL)


def generate_token(user_id: str, ttl: timedelta) -> str:
    now = datetime.now(timezone.utc)
    claims = {"sub": user_id, "iat": now, "exp": now + ttl}
    return jwt.encode(claims, _secret(), algorithm="HS256")


def parse_token(token: str) -> str:
    """Return the user id carried by a valid token; raise jwt.InvalidTokenError otherwise."""
    claims = jwt.decode(token, _secret(), algorithms=["HS256"], options={"require": ["sub", "exp"]})
    return claims["sub"]


def current_user_id(request: Request, authorization: Optional[str] = Header(None)) -> str:
    """Bearer-token gate; stores the caller's id in ``request.state.user_id``."""
    if not authorization:
        logger.info("missing Authorization header")
        raise HTTPException(status_code=401, detail="authorization header required")

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        logger.info("invalid Authorization header format")
        raise HTTPException(status_code=401, detail="invalid authorization header")

    try:
        user_id = parse_token(parts[1])
    except TokenConfigError:
        logger.error("JWT_SECRET not set in environment")
        raise HTTPException(status_code=500, detail="server misconfigured")
    except jwt.InvalidTokenError as e:
        logger.info("token rejected: %s", e)
        raise HTTPException(status_code=401, detail="invalid or expired token")

    request.state.user_id = user_id
    return user_id
