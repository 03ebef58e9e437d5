"""
Identity context: who is calling, resolved per request from a bearer token.

An absent, malformed, expired or orphaned token is not an error here. It is
the anonymous identity (None) and the authorization policy decides what an
anonymous caller may do.
"""
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from database import Repository, get_repository
from schemas import Role

SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(user_id: str, role: Role = Role.CUSTOMER, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": user_id, "role": Role(role).value, "exp": expire}
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def resolve_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    repo: Repository = Depends(get_repository),
) -> Optional[Identity]:
    if credentials is None:
        return None
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        logger.debug("token_rejected")
        return None
    user_id = payload.get("sub")
    if not user_id:
        return None
    # the stored role wins over the token claim so demotions take effect immediately
    user = repo.find_by_id("user", user_id)
    if not user:
        return None
    role = Role.ADMIN if user.get("role") == Role.ADMIN.value else Role.CUSTOMER
    return Identity(id=str(user["_id"]), role=role)
