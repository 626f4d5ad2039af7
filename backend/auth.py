# auth.py — Authentication for the issue tracker
# Features:
# - 7-day JWT bearer tokens carrying user id, email and role
# - bcrypt password hashing
# - Registration (role is always "admin") and non-enumerable login
# - Bootstrap seeding of a known admin account

import os
import secrets
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any

import bcrypt
from jose import jwt, JWTError
from fastapi import HTTPException, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from models import User, UserRole

logger = logging.getLogger("issue-tracker.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set. Generated ephemeral key; "
        "tokens will not survive a restart."
    )

ALGORITHM = "HS256"
TOKEN_EXPIRE_DAYS = int(os.getenv("TOKEN_EXPIRE_DAYS", "7"))
MIN_PASSWORD_LENGTH = 6

SEED_ADMIN_ENABLED = os.getenv("SEED_ADMIN_ENABLED", "true").lower() == "true"
SEED_ADMIN_EMAIL = os.getenv("SEED_ADMIN_EMAIL", "admin@test.com")
SEED_ADMIN_PASSWORD = os.getenv("SEED_ADMIN_PASSWORD", "password123")

INVALID_LOGIN_MESSAGE = "Invalid email or password"

security = HTTPBearer(auto_error=False)


# ============================================================
# ERRORS
# ============================================================

class AuthFailure(str, Enum):
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    UNKNOWN_IDENTITY = "unknown_identity"


_FAILURE_RESPONSES = {
    AuthFailure.MISSING_CREDENTIAL: (401, "Access token required"),
    AuthFailure.INVALID_CREDENTIAL: (403, "Invalid or expired token"),
    AuthFailure.UNKNOWN_IDENTITY: (403, "User not found"),
}


class AuthenticationError(HTTPException):
    """HTTP auth rejection that keeps the machine-readable reason."""

    def __init__(self, reason: AuthFailure):
        status_code, detail = _FAILURE_RESPONSES[reason]
        headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.reason = reason


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_email(value: str) -> str:
    """Reject malformed addresses but keep the caller's exact spelling."""
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError as e:
        raise ValueError(str(e))
    return value


class UserRegister(CamelModel):
    email: str
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def email_format(cls, v: str) -> str:
        return _check_email(v)


class UserLogin(CamelModel):
    email: str
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def email_format(cls, v: str) -> str:
        return _check_email(v)


class UserOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: UserRole


class TokenResponse(CamelModel):
    token: str
    user: UserOut


class CurrentUser(BaseModel):
    id: str
    email: str
    role: str


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Token issuance, password checks and account lookups"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            # Stored value is not a bcrypt hash
            return False

    @staticmethod
    def create_token(user_id: str, email: str, role: str = UserRole.ADMIN.value,
                     expires_delta: Optional[timedelta] = None) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "email": email,
            "role": role,
            "iat": now,
            "exp": now + (expires_delta or timedelta(days=TOKEN_EXPIRE_DAYS)),
        }
        return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_token_for(user: User) -> str:
        return AuthService.create_token(user.id, user.email, _role_value(user.role))

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        """Decode a token; expiry and signature failures are both INVALID_CREDENTIAL."""
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except JWTError:
            raise AuthenticationError(AuthFailure.INVALID_CREDENTIAL)
        if not payload.get("sub"):
            raise AuthenticationError(AuthFailure.INVALID_CREDENTIAL)
        return payload

    @staticmethod
    async def get_user_by_email(email: str, db: AsyncSession) -> Optional[User]:
        result = await db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_user_by_id(user_id: str, db: AsyncSession) -> Optional[User]:
        return await db.get(User, user_id)

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession) -> User:
        if await AuthService.get_user_by_email(user_data.email, db):
            raise HTTPException(status_code=400, detail="User already exists")

        user = User(
            email=user_data.email,
            password_hash=AuthService.hash_password(user_data.password),
            first_name=user_data.first_name,
            last_name=user_data.last_name,
            role=UserRole.ADMIN,
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        logger.info(f"Registered user {user.email} ({user.id})")
        return user

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession) -> Optional[User]:
        """Returns None for an unknown email and for a wrong password alike"""
        user = await AuthService.get_user_by_email(email, db)
        if not user or not AuthService.verify_password(password, user.password_hash):
            return None
        return user

    @staticmethod
    async def ensure_seed_admin(db: AsyncSession) -> Optional[User]:
        """Create the bootstrap admin account if it is missing"""
        if not SEED_ADMIN_ENABLED:
            return None
        existing = await AuthService.get_user_by_email(SEED_ADMIN_EMAIL, db)
        if existing:
            return existing
        user = User(
            email=SEED_ADMIN_EMAIL,
            password_hash=AuthService.hash_password(SEED_ADMIN_PASSWORD),
            first_name="Test",
            last_name="Admin",
            role=UserRole.ADMIN,
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        logger.info(f"Seeded admin account {SEED_ADMIN_EMAIL}")
        return user


def _role_value(role) -> str:
    return role.value if isinstance(role, UserRole) else str(role)


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

def _bearer_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    # HTTPBearer drops other schemes; the second word still counts as a token
    parts = request.headers.get("Authorization", "").split()
    return parts[1] if len(parts) > 1 else None


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    token = _bearer_token(request, credentials)
    if not token:
        raise AuthenticationError(AuthFailure.MISSING_CREDENTIAL)

    payload = AuthService.verify_token(token)

    user = await AuthService.get_user_by_id(payload["sub"], db)
    if user is None:
        raise AuthenticationError(AuthFailure.UNKNOWN_IDENTITY)

    return CurrentUser(
        id=user.id,
        email=payload.get("email", user.email),
        role=payload.get("role") or _role_value(user.role),
    )
