"""
Credential handling and the per-request context.

Tokens are issued elsewhere (OTP login); this module only verifies them
and checks that the account they name still exists.
A token may arrive as ``Authorization: Bearer <jwt>`` or in the ``token``
cookie. Only its ``_id`` (or ``id``) claim is used; email and role are read
from the user document.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from pymongo.database import Database

from config import Settings, get_settings
from database import get_db, to_object_id
from errors import Forbidden, Unauthorized

security = HTTPBearer(auto_error=False)

TOKEN_COOKIE = "token"


class CurrentUser(BaseModel):
    id: str
    email: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class Context:
    """Everything a handler needs for one request: storage, settings, caller."""
    db: Database
    settings: Settings
    user: CurrentUser


def create_token(payload: dict, settings: Settings, expires_in: timedelta = timedelta(days=7)) -> str:
    exp = datetime.now(timezone.utc) + expires_in
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Unauthorized: Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Unauthorized: Invalid token")


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
    db: Database = Depends(get_db),
) -> CurrentUser:
    token = request.cookies.get(TOKEN_COOKIE)
    if not token and credentials is not None:
        token = credentials.credentials
    if not token:
        raise Unauthorized("Unauthorized: Token missing")

    payload = decode_token(token, settings)
    user_id = payload.get("_id") or payload.get("id")
    if not user_id:
        raise Unauthorized("Unauthorized: Invalid token payload")
    oid = to_object_id(user_id)
    user = db["user"].find_one({"_id": oid}, {"email": 1, "role": 1}) if oid is not None else None
    if not user:
        raise Unauthorized("Unauthorized: User not found")
    # role comes from the account, not the token
    return CurrentUser(id=str(user["_id"]), email=user.get("email"), role=user.get("role") or "user")


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise Forbidden("Forbidden: Access denied")
    return user


def get_context(
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Context:
    return Context(db=db, settings=settings, user=user)


def get_admin_context(
    user: CurrentUser = Depends(require_admin),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Context:
    return Context(db=db, settings=settings, user=user)
