import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic.config import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    ACTIVATION_TOKEN_EXPIRE_HOURS,
    ALGORITHM,
    SECRET_KEY,
    SESSION_COOKIE_NAME,
)
from clinic.db import get_db
from clinic.errors import Forbidden, Unauthenticated
from clinic.models import Role, User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def verify_password(plain_password, password_hash):
    return pwd_context.verify(plain_password, password_hash)


def hash_password(password):
    if not isinstance(password, (str, bytes)):
        raise TypeError("Password must be a string or bytes.")
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_user_token(user: User) -> str:
    return create_access_token(data={"sub": str(user.id), "role": user.role, "email": user.email})


def create_activation_token(user: User) -> str:
    """Short-lived token mailed to new therapists so they can set a password."""
    to_encode = {"sub": str(user.id), "scope": "activate"}
    to_encode["exp"] = datetime.now(timezone.utc) + timedelta(hours=ACTIVATION_TOKEN_EXPIRE_HOURS)
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_activation_token(token: str) -> str:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise Unauthenticated("Activation token is invalid or expired")
    if payload.get("scope") != "activate" or not payload.get("sub"):
        raise Unauthenticated("Activation token is invalid or expired")
    return payload["sub"]


def decode_session_token(token: Optional[str]) -> Optional[dict]:
    """Return the token claims, or None when the token is missing, expired or forged."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if payload.get("scope") is not None or not payload.get("sub"):
        return None
    return payload


def extract_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if header:
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value:
            return value.strip()
    return request.cookies.get(SESSION_COOKIE_NAME)


async def get_current_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolves the session token (bearer header or session cookie) to an active user.
    """
    claims = decode_session_token(token or request.cookies.get(SESSION_COOKIE_NAME))
    if claims is None:
        raise Unauthenticated("Could not validate credentials")

    res = await db.execute(select(User).where(User.id == claims["sub"]))
    user = res.scalar_one_or_none()
    if user is None or not user.active:
        raise Unauthenticated("Could not validate credentials")
    return user


async def get_optional_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> Optional[User]:
    claims = decode_session_token(token or request.cookies.get(SESSION_COOKIE_NAME))
    if claims is None:
        return None
    res = await db.execute(select(User).where(User.id == claims["sub"]))
    user = res.scalar_one_or_none()
    if user is None or not user.active:
        return None
    return user


def require_roles(*roles: Role):
    allowed = {role.value for role in roles}

    async def dependency(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed:
            raise Forbidden("Not authorized")
        return current_user

    return dependency
