"""
Issues Router — public browsing plus authenticated create/update/delete.

Every mutation is committed to the store first and then mirrored to the
spreadsheet in the same request. A mirror failure surfaces as a 500 but the
committed write stays.
"""

from datetime import date, datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth import CamelModel, CurrentUser, get_current_user
from issue_store import IssueStore, IssueFilter, IssueNotFound, get_issue_store
from models import IssueType, IssueImpact, IssueStatus
from sheet_mirror import SheetMirror, SyncAction, get_sheet_mirror

router = APIRouter(prefix="/api/issues", tags=["Issues"])


# ── Schemas ──────────────────────────────────────────────────

def _date_only(value):
    # Clients send full ISO timestamps for date pickers
    if isinstance(value, str) and len(value) > 10:
        return value[:10]
    return value


class IssueCreate(CamelModel):
    title: str = Field(..., min_length=1)
    type: IssueType
    description: str = Field(..., min_length=1)
    impact: IssueImpact
    status: IssueStatus
    expected_fix_date: Optional[date] = None

    @field_validator("expected_fix_date", mode="before")
    @classmethod
    def normalize_fix_date(cls, v):
        return _date_only(v)


class IssueUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1)
    type: Optional[IssueType] = None
    description: Optional[str] = Field(None, min_length=1)
    impact: Optional[IssueImpact] = None
    status: Optional[IssueStatus] = None
    expected_fix_date: Optional[date] = None

    @field_validator("expected_fix_date", mode="before")
    @classmethod
    def normalize_fix_date(cls, v):
        return _date_only(v)


class IssuePublic(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    title: str
    type: IssueType
    description: str
    impact: IssueImpact
    status: IssueStatus
    expected_fix_date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class IssueOut(IssuePublic):
    created_by: Optional[str] = None
    updated_by: Optional[str] = None


# ── Public ───────────────────────────────────────────────────

@router.get("", response_model=List[IssuePublic])
async def list_issues(
    status: Optional[str] = None,
    type: Optional[str] = None,
    search: Optional[str] = None,
    store: IssueStore = Depends(get_issue_store),
):
    return await store.list(IssueFilter(status=status, type=type, search=search))


@router.get("/{issue_id}", response_model=IssuePublic)
async def get_issue(issue_id: str, store: IssueStore = Depends(get_issue_store)):
    try:
        return await store.get(issue_id)
    except IssueNotFound:
        raise HTTPException(404, "Issue not found")


# ── Authenticated ────────────────────────────────────────────

@router.post("", response_model=IssueOut, status_code=201)
async def create_issue(
    body: IssueCreate,
    user: CurrentUser = Depends(get_current_user),
    store: IssueStore = Depends(get_issue_store),
    mirror: SheetMirror = Depends(get_sheet_mirror),
):
    issue = await store.create(body.model_dump(), user.id)
    await mirror.sync_issue(issue, SyncAction.CREATE)
    return issue


@router.put("/{issue_id}", response_model=IssueOut)
async def update_issue(
    issue_id: str,
    body: IssueUpdate,
    user: CurrentUser = Depends(get_current_user),
    store: IssueStore = Depends(get_issue_store),
    mirror: SheetMirror = Depends(get_sheet_mirror),
):
    try:
        issue = await store.update(issue_id, body.model_dump(exclude_unset=True), user.id)
    except IssueNotFound:
        raise HTTPException(404, "Issue not found")
    await mirror.sync_issue(issue, SyncAction.UPDATE)
    return issue


@router.delete("/{issue_id}", status_code=204)
async def delete_issue(
    issue_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: IssueStore = Depends(get_issue_store),
    mirror: SheetMirror = Depends(get_sheet_mirror),
):
    try:
        issue = await store.get(issue_id)
    except IssueNotFound:
        raise HTTPException(404, "Issue not found")

    if not await store.delete(issue_id):
        raise HTTPException(404, "Issue not found")

    await mirror.sync_issue(issue, SyncAction.DELETE)
    return Response(status_code=204)
