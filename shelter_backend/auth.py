"""Accounts for shelter owners, bookers and admins.

Passwords are hashed with pwdlib and sessions are stateless JWT bearer tokens
whose ``sub`` claim is the username.
"""

from typing import Annotated, Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from pwdlib import PasswordHash
from pydantic import BaseModel
import jwt
from jwt.exceptions import InvalidTokenError
from datetime import datetime, timedelta, timezone
from sqlmodel import Session, select
import logging
import os

from .database import get_session
from .models import User

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("SECRET_KEY")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30))

password_hash = PasswordHash.recommended()
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


def get_password_hash(password: str) -> str:
    return password_hash.hash(password)


def create_access_token(
    username: str, expires_delta: Optional[timedelta] = None
) -> Token:
    """Sign a bearer token for ``username``.

    Lifetime defaults to ``ACCESS_TOKEN_EXPIRE_MINUTES``.
    """
    if not SECRET_KEY:
        raise ValueError("SECRET_KEY is missing")
    expires_at = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    encoded = jwt.encode(
        {"sub": username, "exp": expires_at}, SECRET_KEY, algorithm=ALGORITHM
    )
    return Token(access_token=encoded, expires_at=expires_at)


def find_user(session: Session, username: str) -> Optional[User]:
    return session.exec(select(User).where(User.username == username)).first()


def authenticate_user(
    session: Session, username: str, password: str
) -> Optional[User]:
    user = find_user(session, username)
    if user is None or not password_hash.verify(password, user.hashed_password):
        logger.info("Failed login for %s", username)
        return None
    return user


def require_admin(user: User) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")
    return user


def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
    session: Session = Depends(get_session),
) -> User:
    unauthorised = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        username = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM]).get("sub")
    except InvalidTokenError:
        raise unauthorised
    user = find_user(session, username) if username else None
    if user is None:
        raise unauthorised
    return user
