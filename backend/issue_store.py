"""
Issue Store — CRUD and filtered listing over the ``issues`` table.

The store is constructed per request around an ``AsyncSession`` and commits its
own writes. Domain errors are raised as ``IssueNotFound`` / ``IssueValidationError``
and mapped to HTTP responses by the API layer.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import Depends
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from models import Issue, IssueType, IssueImpact, IssueStatus, new_uuid, utcnow

REQUIRED_FIELDS = ("title", "type", "description", "impact", "status")
MUTABLE_FIELDS = REQUIRED_FIELDS + ("expected_fix_date",)

_ENUM_FIELDS = {
    "type": IssueType,
    "impact": IssueImpact,
    "status": IssueStatus,
}


class IssueNotFound(Exception):
    def __init__(self, issue_id: str):
        super().__init__(f"Issue {issue_id} not found")
        self.issue_id = issue_id


class IssueValidationError(Exception):
    """Raised with every offending field, not just the first one."""

    def __init__(self, errors: Dict[str, str]):
        super().__init__("Invalid issue fields: " + ", ".join(sorted(errors)))
        self.errors = errors

    @property
    def fields(self) -> List[str]:
        return sorted(self.errors)


@dataclass
class IssueFilter:
    status: Optional[str] = None
    type: Optional[str] = None
    search: Optional[str] = None


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _clean_fields(fields: Dict[str, Any], required: bool) -> Dict[str, Any]:
    """Validate and coerce issue fields. Unknown and immutable keys are dropped."""
    errors: Dict[str, str] = {}
    cleaned: Dict[str, Any] = {}

    names = MUTABLE_FIELDS if required else [k for k in MUTABLE_FIELDS if k in fields]
    for name in names:
        value = fields.get(name)
        if name in REQUIRED_FIELDS:
            if _is_blank(value):
                errors[name] = "Required"
                continue
            enum_cls = _ENUM_FIELDS.get(name)
            if enum_cls is not None:
                try:
                    value = enum_cls(value)
                except ValueError:
                    allowed = ", ".join(m.value for m in enum_cls)
                    errors[name] = f"Must be one of: {allowed}"
                    continue
        elif name == "expected_fix_date" and isinstance(value, str):
            if not value:
                value = None
            else:
                try:
                    value = date.fromisoformat(value[:10])
                except ValueError:
                    errors[name] = "Must be an ISO date (YYYY-MM-DD)"
                    continue
        cleaned[name] = value

    if errors:
        raise IssueValidationError(errors)
    return cleaned


class IssueStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list(self, filters: Optional[IssueFilter] = None) -> List[Issue]:
        """All issues matching every given predicate, newest first."""
        filters = filters or IssueFilter()
        conditions = []
        if filters.status:
            conditions.append(Issue.status == filters.status)
        if filters.type:
            conditions.append(Issue.type == filters.type)
        if filters.search:
            conditions.append(Issue.title.icontains(filters.search, autoescape=True))

        query = select(Issue)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(Issue.created_at.desc())

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get(self, issue_id: str) -> Issue:
        issue = await self.db.get(Issue, issue_id)
        if issue is None:
            raise IssueNotFound(issue_id)
        return issue

    async def create(self, fields: Dict[str, Any], actor_id: Optional[str]) -> Issue:
        values = _clean_fields(fields, required=True)
        now = utcnow()
        issue = Issue(
            id=new_uuid(),
            created_by=actor_id,
            updated_by=actor_id,
            created_at=now,
            updated_at=now,
            **values,
        )
        self.db.add(issue)
        await self.db.commit()
        return issue

    async def update(self, issue_id: str, fields: Dict[str, Any], actor_id: Optional[str]) -> Issue:
        issue = await self.get(issue_id)
        values = _clean_fields(fields, required=False)
        for name, value in values.items():
            setattr(issue, name, value)
        issue.updated_by = actor_id
        issue.updated_at = utcnow()
        await self.db.commit()
        return issue

    async def delete(self, issue_id: str) -> bool:
        issue = await self.db.get(Issue, issue_id)
        if issue is None:
            return False
        await self.db.delete(issue)
        await self.db.commit()
        return True


def get_issue_store(db: AsyncSession = Depends(get_db_session)) -> IssueStore:
    return IssueStore(db)
