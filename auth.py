"""
Identity tokens and the authorization guard.

``require_token`` verifies the bearer token; ``require_owner`` and
``require_admin`` are layered on top of it as FastAPI dependencies, so a
failed check raises before the route body runs.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

import config
from database import get_db
from errors import Forbidden, InvalidToken, MissingToken
from repositories import UserRepository

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class Identity(BaseModel):
    uid: str


def create_token(uid: str) -> str:
    payload = {"uid": uid}
    if config.JWT_EXPIRES_DAYS > 0:
        payload["exp"] = datetime.now(timezone.utc) + timedelta(days=config.JWT_EXPIRES_DAYS)
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGO)


def decode_token(token: str) -> Identity:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise InvalidToken("Token expired")
    except jwt.InvalidTokenError:
        raise InvalidToken()
    uid = payload.get("uid")
    if not isinstance(uid, str) or not uid:
        raise InvalidToken("Invalid token payload")
    return Identity(uid=uid)


def require_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Identity:
    if credentials is None or not credentials.credentials:
        raise MissingToken()
    return decode_token(credentials.credentials)


def check_owner(identity: Identity, resource_uid: Optional[str]) -> None:
    if identity.uid != resource_uid:
        logger.warning("uid mismatch: token %s, resource %s", identity.uid, resource_uid)
        raise Forbidden()


def check_admin(identity: Identity, users: UserRepository) -> dict:
    user = users.get(identity.uid)
    if not user or user.get("role") != "admin":
        logger.warning("Non-admin %s refused on admin route", identity.uid)
        raise Forbidden()
    return user


def require_owner(uid: str, identity: Identity = Depends(require_token)) -> Identity:
    """``uid`` (path or query, depending on the route) must be the token's uid."""
    check_owner(identity, uid)
    return identity


def require_admin(identity: Identity = Depends(require_owner), db=Depends(get_db)) -> Identity:
    check_admin(identity, UserRepository(db))
    return identity
