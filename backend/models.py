# models.py — Database models for the issue tracker
# - String UUID primary keys
# - Enum values stored as their literal strings ("feature-request", "High", ...)
# - Issues are hard-deleted; created_by / updated_by are the only audit fields

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Column, String, DateTime, Date, Text, Enum as SQLEnum, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    ADMIN = "admin"


class IssueType(str, PyEnum):
    ISSUE = "issue"
    FEATURE_REQUEST = "feature-request"


class IssueImpact(str, PyEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class IssueStatus(str, PyEnum):
    OPEN = "open"
    ASSIGNED = "assigned"
    CLOSED = "closed"


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    role = Column(
        SQLEnum(UserRole, values_callable=_enum_values, native_enum=False, length=50),
        default=UserRole.ADMIN, nullable=False,
    )
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# ISSUES
# ============================================================

class Issue(Base):
    __tablename__ = "issues"

    id = Column(String(36), primary_key=True, default=new_uuid)
    title = Column(Text, nullable=False)
    type = Column(
        SQLEnum(IssueType, values_callable=_enum_values, native_enum=False, length=50),
        nullable=False, index=True,
    )
    description = Column(Text, nullable=False)
    impact = Column(
        SQLEnum(IssueImpact, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
    )
    status = Column(
        SQLEnum(IssueStatus, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False, index=True,
    )
    expected_fix_date = Column(Date, nullable=True)
    # user ids, not foreign keys
    created_by = Column(String(36), nullable=True)
    updated_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_issue_created_at", "created_at"),
    )

    def __repr__(self):
        return f"<Issue {self.id} {self.title!r} [{self.status}]>"
