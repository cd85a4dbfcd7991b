"""
Accounts and sessions.

Session tokens are HS256 JWTs signed with SECRET_KEY, carrying the user id in
``sub`` and an ``exp`` claim. The same token authenticates REST calls and the
real-time handshake.
"""
import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from email_validator import validate_email, EmailNotValidError
from fastapi import Request
from pymongo.database import Database

import config
from database import create_document, find_by_id, oid
from errors import NotFound, Unauthenticated, ValidationFailed
from schemas import User

logger = logging.getLogger(__name__)

MIN_PASSWORD = 6
USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]{3,20}$")
PBKDF2_ROUNDS = 200_000
TOKEN_ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS).hex()
    return f"{PBKDF2_ROUNDS}${salt}${digest}"


def check_password(password: str, stored: str) -> bool:
    try:
        rounds, salt, digest = stored.split("$")
        rounds = int(rounds)
    except (AttributeError, ValueError):
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), rounds).hex()
    return hmac.compare_digest(candidate, digest)


def issue_token(user_id: str, secret: Optional[str] = None, ttl: Optional[int] = None) -> str:
    secret = secret or config.SECRET_KEY
    issued_at = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "iat": issued_at,
        "exp": issued_at + timedelta(seconds=ttl if ttl is not None else config.SESSION_TTL),
    }
    return jwt.encode(payload, secret, algorithm=TOKEN_ALGORITHM)


def verify_token(token: Optional[str], secret: Optional[str] = None) -> str:
    """Return the user id carried by a valid token, raise Unauthenticated otherwise."""
    secret = secret or config.SECRET_KEY
    if not token:
        raise Unauthenticated("Unauthorized: No valid token provided")
    try:
        payload = jwt.decode(token, secret, algorithms=[TOKEN_ALGORITHM], options={"require": ["sub", "exp"]})
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Unauthorized: Token expired")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Unauthorized: Invalid token")
    return payload["sub"]


def token_from_request(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return request.cookies.get(config.SESSION_COOKIE)


def _username_base(full_name: str) -> str:
    base = re.sub(r"[^a-zA-Z0-9]", "", full_name.lower())[:15]
    return base if len(base) >= 3 else (base + "user")[:15]


def generate_username(database: Database, full_name: str) -> str:
    base = _username_base(full_name)
    candidate, i = base, 1
    while database["user"].find_one({"username": candidate}):
        i += 1
        candidate = f"{base}{i}"
    return candidate


class AuthService:
    def __init__(self, database: Database):
        self.db = database

    def signup(self, full_name: str, email: str, password: str, username: Optional[str] = None) -> dict:
        full_name = (full_name or "").strip()
        if not full_name or not email or not password:
            raise ValidationFailed("All fields are required")
        try:
            email = validate_email(email, check_deliverability=False).normalized.lower()
        except EmailNotValidError:
            raise ValidationFailed("Invalid email format")
        if len(password) < MIN_PASSWORD:
            raise ValidationFailed(f"Password must be at least {MIN_PASSWORD} characters long")
        if self.db["user"].find_one({"email": email}):
            raise ValidationFailed("Email already registered")

        if username:
            if not USERNAME_RE.match(username):
                raise ValidationFailed("Username must be 3-20 letters, numbers or underscores")
            username = username.lower()
            if self.db["user"].find_one({"username": username}):
                raise ValidationFailed("Username is already taken")
        else:
            username = generate_username(self.db, full_name)

        user = User(full_name=full_name, email=email, username=username, password_hash=hash_password(password))
        user_id = create_document(self.db, "user", user)
        logger.info("New user %s (%s)", username, user_id)
        return find_by_id(self.db, "user", user_id, "User")

    def login(self, email: str, password: str) -> dict:
        user = self.db["user"].find_one({"email": (email or "").lower()})
        if not user or not check_password(password or "", user.get("password_hash", "")):
            raise ValidationFailed("Invalid email or password")
        return user

    def current_user(self, token: Optional[str]) -> dict:
        user_id = verify_token(token)
        try:
            user = self.db["user"].find_one({"_id": oid(user_id, "User")})
        except NotFound:
            user = None
        if not user:
            raise Unauthenticated("Unauthorized: User not found")
        return user
