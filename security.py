"""
Password hashing, session tokens and the authentication dependencies.

A session token is a signed JWT with ``sub`` (user id) and ``role`` claims.
Clients send it either as ``Authorization: Bearer <token>`` or in the
http-only ``token`` cookie set at signup/login.
"""
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Cookie, Depends, Response
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

import settings
from database import get_db
from errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)

pwd_context = CryptContext(
    schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS
)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/users/login", auto_error=False)

PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")
PASSWORD_POLICY = (
    "Password must be at least 8 characters long, include uppercase, "
    "lowercase, number, and special character."
)

# Never leave the server, whatever the endpoint.
SENSITIVE_FIELDS = (
    "password",
    "emailVerificationToken",
    "emailVerificationExpires",
    "passwordResetToken",
    "passwordResetExpires",
    "loginAttempts",
    "lockUntil",
    "adminNotes",
    "reportCount",
    "revision",
)


# ----------------------------
# Utils
# ----------------------------

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def password_meets_policy(password: str) -> bool:
    return bool(PASSWORD_RE.match(password))


def create_access_token(user_id: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.COOKIE_NAME,
        value=token,
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.COOKIE_NAME,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
    )


def strip_sensitive(doc: dict) -> dict:
    return {k: v for k, v in doc.items() if k not in SENSITIVE_FIELDS}


def is_account_usable(user: dict) -> bool:
    return (
        user.get("isActive", True)
        and not user.get("isSuspended", False)
        and user.get("deletedAt") is None
    )


# ----------------------------
# Auth dependencies
# ----------------------------

def get_current_user(
    bearer: Optional[str] = Depends(oauth2_scheme),
    cookie_token: Optional[str] = Cookie(None, alias=settings.COOKIE_NAME),
    db: Database = Depends(get_db),
) -> dict:
    """Resolve the caller from the session token; returns the stored user document."""
    token = bearer or cookie_token
    if not token:
        raise Unauthorized("Access Denied. No token provided.", code="NO_TOKEN")

    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise Unauthorized("Token has expired.", code="TOKEN_EXPIRED")
    except JWTError:
        raise Unauthorized("Invalid Token.", code="INVALID_TOKEN")

    user_id = payload.get("sub")
    try:
        oid = ObjectId(user_id)
    except (InvalidId, TypeError):
        raise Unauthorized("Invalid Token.", code="INVALID_TOKEN")

    user = db["user"].find_one({"_id": oid})
    if user is None:
        raise Unauthorized("User not found.", code="USER_NOT_FOUND")
    if not is_account_usable(user):
        raise Unauthorized(
            "Account is inactive. Please contact support.", code="ACCOUNT_INACTIVE"
        )
    return user


def require_role(required: List[str]):
    def _dep(user: dict = Depends(get_current_user)) -> dict:
        if user.get("role") not in required:
            logger.info("User %s with role %s denied; needs %s", user["_id"], user.get("role"), required)
            raise Forbidden("You are not authorized to perform this action.")
        return user
    return _dep
