"""
Credential store: registration, login and bearer tokens.

Passwords are stored as bcrypt hashes. Tokens are HS256 JWTs; verifying one
needs only the signing secret, so protected routes never touch the users table.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

import bcrypt
import jwt
import structlog
from email_validator import EmailNotValidError, validate_email
from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import BCRYPT_ROUNDS, JWT_ALGO, JWT_EXPIRES_MINUTES, JWT_SECRET
from errors import (
    AuthenticationError,
    AuthorizationError,
    DuplicateEmailError,
    ValidationError,
)
from models import ROLES, User

logger = structlog.get_logger(__name__)

MIN_PASSWORD_LENGTH = 6
# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72


@dataclass(frozen=True)
class Caller:
    """Identity carried by a verified bearer token."""

    id: int
    email: str
    role: str
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode(), salt).decode()


def verify_password(password: str, password_hash: str) -> bool:
    encoded = password.encode()
    if len(encoded) > MAX_PASSWORD_BYTES:
        return False
    return bcrypt.checkpw(encoded, password_hash.encode())


def create_token(user: User, include_name: bool = False) -> str:
    payload = {"id": user.id, "email": user.email, "role": user.role}
    if include_name:
        payload["name"] = user.name
    if JWT_EXPIRES_MINUTES is not None:
        payload["exp"] = datetime.now(timezone.utc) + timedelta(minutes=JWT_EXPIRES_MINUTES)
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> Caller:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.PyJWTError as e:
        raise AuthenticationError("Invalid or expired token") from e
    try:
        return Caller(
            id=int(payload["id"]),
            email=payload["email"],
            role=payload["role"],
            name=payload.get("name"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise AuthenticationError("Malformed token payload") from e


def _validate_registration(name, email, password, mobile, role) -> None:
    if not name or not email or not password or not mobile:
        raise ValidationError("All fields are required")
    if role not in ROLES:
        raise ValidationError("Invalid role specified")
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError as e:
        raise ValidationError("Invalid email format") from e
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password.encode()) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes long")


def register(
    db: Session,
    name: Optional[str],
    email: Optional[str],
    password: Optional[str],
    mobile: Optional[str],
    role: Optional[str],
) -> Tuple[User, str]:
    """Create a user and return it with a token bound to {id, email, role}."""
    _validate_registration(name, email, password, mobile, role)

    existing = db.scalar(select(User.id).where(User.email == email))
    if existing is not None:
        raise DuplicateEmailError(email)

    user = User(name=name, email=email, password=hash_password(password), mobile=mobile, role=role)
    db.add(user)
    try:
        db.commit()
    except IntegrityError as e:
        # lost a race with a concurrent registration of the same email
        db.rollback()
        raise DuplicateEmailError(email) from e

    logger.info("User registered", user_id=user.id, role=user.role)
    return user, create_token(user)


def login(db: Session, email: Optional[str], password: Optional[str], role: Optional[str] = None) -> Tuple[User, str]:
    """Check credentials and return the user with a token carrying {id, email, role, name}.

    A wrong email or password is an AuthenticationError. Correct credentials
    with a different expected role are an AuthorizationError instead, so the
    client can tell the two apart.
    """
    if not email or not password:
        raise ValidationError("Email and password are required")

    user = db.scalar(select(User).where(User.email == email))
    if user is None or not verify_password(password, user.password):
        logger.info("Login rejected", reason="bad_credentials")
        raise AuthenticationError("Invalid credentials")

    if role and user.role != role:
        logger.info("Login rejected", reason="role_mismatch", user_id=user.id, requested_role=role)
        raise AuthorizationError(f"Access denied. You are not authorized as {role}")

    logger.info("User logged in", user_id=user.id, role=user.role)
    return user, create_token(user, include_name=True)


def get_current_user(authorization: Optional[str] = Header(None)) -> Caller:
    if not authorization:
        raise AuthenticationError("Missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Missing bearer token")
    return decode_token(token.strip())


def require_role(role: str) -> Callable[[Caller], Caller]:
    """Dependency factory: the verified caller, provided they hold `role`."""

    def dependency(caller: Caller = Depends(get_current_user)) -> Caller:
        if caller.role != role:
            raise AuthorizationError(f"{role.capitalize()} only")
        return caller

    return dependency
