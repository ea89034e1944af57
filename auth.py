"""
Authentication: password hashing, signed tokens and the request gate.

Tokens are HS256 JWTs carrying the user id and role. The gate never touches
the database; a valid signature and expiry are enough to identify the caller.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
import jwt
from fastapi import Depends, Header
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import USERS, create_document
from errors import AuthenticationError, AuthorizationError, ConflictError, NotFoundError, ValidationError
from schemas import ROLES, User
from settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    role: str


def hash_password(password: str, rounds: int = 10) -> str:
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode(), salt).decode()


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        # Stored value is not a bcrypt hash
        return False


def issue_token(settings: Settings, user_id: str, role: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "userId": str(user_id),
        "role": role,
        "iat": now,
        "exp": now + timedelta(hours=settings.token_ttl_hours),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(settings: Settings, token: str) -> TokenClaims:
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "userId", "role"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")
    return TokenClaims(user_id=str(payload["userId"]), role=str(payload["role"]))


def public_user(user_doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user_doc["_id"]),
        "name": user_doc["name"],
        "email": user_doc["email"],
        "role": user_doc["role"],
    }


def _session(settings: Settings, user_doc: Dict[str, Any]) -> Dict[str, Any]:
    token = issue_token(settings, str(user_doc["_id"]), user_doc["role"])
    return {"success": True, "token": token, "user": public_user(user_doc)}


def normalize_email(email: Optional[str]) -> Optional[str]:
    return email.strip().lower() if email else email


def register_user(
    db: Database,
    settings: Settings,
    name: Optional[str],
    email: Optional[str],
    password: Optional[str],
    role: Optional[str],
) -> Dict[str, Any]:
    email = normalize_email(email)
    logger.info("Registration attempt: email=%s role=%s", email, role)

    if not name or not email or not password or not role:
        raise ValidationError("All fields are required")
    if role not in ROLES:
        raise ValidationError("Role must be either artisan or buyer", field="role")

    if db[USERS].find_one({"email": email}):
        raise ConflictError("User already exists with this email")

    user = User(
        name=name,
        email=email,
        password=hash_password(password, settings.bcrypt_rounds),
        role=role,
    )
    try:
        user_doc = create_document(db, USERS, user.to_document())
    except DuplicateKeyError:
        raise ConflictError("User already exists with this email")

    logger.info("User registered successfully: %s", user_doc["_id"])
    return _session(settings, user_doc)


def login(db: Database, settings: Settings, email: str, password: str) -> Dict[str, Any]:
    email = normalize_email(email)
    logger.info("Login attempt for email: %s", email)

    user_doc = db[USERS].find_one({"email": email})
    if not user_doc:
        raise NotFoundError("User", message="User not found. Please check your email or register.")
    if not verify_password(password, user_doc["password"]):
        logger.info("Invalid password for user: %s", email)
        raise AuthenticationError("Invalid password")

    return _session(settings, user_doc)


# ---------------------- Request gate ----------------------

def get_current_user(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> TokenClaims:
    if not authorization:
        raise AuthenticationError("No token, authorization denied")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Invalid authorization header")
    return verify_token(settings, token.strip())


def require_role(role: str):
    def dependency(user: TokenClaims = Depends(get_current_user)) -> TokenClaims:
        if user.role != role:
            raise AuthorizationError(f"Only {role}s can perform this action", required_role=role)
        return user

    return dependency
