"""
Session and authorization helpers.

Sessions are stateless: the signed token carries the identity snapshot and
nothing is looked up server side, so a token stays valid until it expires
even if the account behind it is deleted or its role changes.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import pydantic
from fastapi import Depends, Request, Response
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError

import database
from config import COOKIE_SECURE, JWT_ALGORITHM, JWT_SECRET, SESSION_COOKIE, SESSION_MAX_AGE
from errors import Conflict, Forbidden, NotFound, RateLimited, Unauthorized, ValidationError
from rate_limit import LoginAttemptTracker
from schemas import Identity, Role, User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
login_attempts = LoginAttemptTracker()


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


# --------------- Tokens ---------------------------------------------------

def issue_credential(identity: Identity, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = identity.model_dump()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(seconds=SESSION_MAX_AGE))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


def resolve_session(token: Optional[str]) -> Optional[Identity]:
    """Verify `token` and return its identity, or None for anything invalid."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    try:
        return Identity(**payload)
    except (pydantic.ValidationError, TypeError):
        return None


def is_privileged(identity: Optional[Identity]) -> bool:
    return identity is not None and identity.role == "ADMIN"


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=SESSION_MAX_AGE,
        path="/",
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
    )


def clear_session_cookie(response: Response) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        "",
        max_age=0,
        path="/",
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
    )


# --------------- Dependencies --------------------------------------------

def get_optional_user(request: Request) -> Optional[Identity]:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        authorization = request.headers.get("Authorization", "")
        if authorization.startswith("Bearer "):
            token = authorization.split(" ", 1)[1]
    return resolve_session(token)


def get_current_user(user: Optional[Identity] = Depends(get_optional_user)) -> Identity:
    if user is None:
        raise Unauthorized()
    return user


def get_admin_user(current_user: Identity = Depends(get_current_user)) -> Identity:
    if not is_privileged(current_user):
        raise Forbidden("Admin privileges required")
    return current_user


# --------------- Account flows -------------------------------------------

def identity_from_doc(user: dict) -> Identity:
    return Identity(id=str(user["_id"]), email=user["email"], name=user["name"], role=user["role"])


def authenticate(email: str, password: str) -> Identity:
    """Check credentials for an already validated, lowercased email."""
    key = f"login_{email}"
    if login_attempts.is_locked(key):
        logger.warning("Login rejected for locked account %s", email)
        raise RateLimited("Account temporarily locked, try again later")

    user = database.get_db()["user"].find_one({"email": email})
    if not user or not verify_password(password, user.get("password", "")):
        failures = login_attempts.record_failure(key)
        logger.info("Failed login for %s (%d consecutive)", email, failures)
        raise Unauthorized("Incorrect email or password")

    login_attempts.clear(key)
    logger.info("User %s logged in", email)
    return identity_from_doc(user)


def register_user(name: str, email: str, password: str, role: Role = "CUSTOMER") -> Identity:
    users = database.get_db()["user"]
    if users.find_one({"email": email}):
        raise Conflict("Email already registered")
    try:
        user_doc = User(name=name, email=email, password=get_password_hash(password), role=role)
    except pydantic.ValidationError as e:
        raise ValidationError(str(e.errors()[0]["msg"]))
    try:
        user_id = database.create_document("user", user_doc)
    except DuplicateKeyError:
        raise Conflict("Email already registered")
    logger.info("Registered %s user %s", role, email)
    return Identity(id=user_id, email=user_doc.email, name=user_doc.name, role=user_doc.role)


def list_users() -> list:
    users = database.get_documents("user")
    out = []
    for u in users:
        u = database.doc_to_dict(u)
        u.pop("password", None)
        out.append(u)
    return out


def delete_user(user_id: str) -> None:
    """Delete an account and its orders. Stock held by those orders is not restored."""
    db = database.get_db()
    oid = database.to_object_id(user_id)
    if oid is None or db["user"].find_one({"_id": oid}) is None:
        raise NotFound("User not found")
    db["user"].delete_one({"_id": oid})
    removed = db["order"].delete_many({"user_id": oid}).deleted_count
    logger.info("User %s deleted along with %d orders", user_id, removed)
