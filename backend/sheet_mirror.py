"""
Sheet Mirror — one-way, best-effort replication of issue mutations into a
Google Sheets tab through the Sheets v4 REST API.

Rows are matched by exact title, first match wins. Every transport or API error
is logged and re-raised as ``SheetSyncError``; nothing is retried. When the
service-account credentials are not configured the mirror is disabled and every
call is a logged no-op.
"""

import os
import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from fastapi import Request
from jose import jwt
from jose.exceptions import JOSEError

logger = logging.getLogger("issue-tracker.sheets")

SHEETS_API_URL = "https://sheets.googleapis.com/v4/spreadsheets"
TOKEN_URI = "https://oauth2.googleapis.com/token"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

HEADER_ROW = [
    "Title",
    "Type",
    "Description",
    "Impact",
    "Status",
    "Expected Fix Date",
    "Created By",
    "Updated By",
]
FIRST_COLUMN = "A"
LAST_COLUMN = "H"

# Seconds before expiry at which a cached access token is refreshed
TOKEN_REFRESH_MARGIN = 60


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SheetSyncError(Exception):
    """The spreadsheet could not be updated. The primary write is unaffected."""


@dataclass
class SheetMirrorConfig:
    client_email: Optional[str] = None
    private_key: Optional[str] = None
    spreadsheet_id: Optional[str] = None
    tab_name: str = "Issues"
    sheet_id: int = 0
    api_url: str = SHEETS_API_URL
    token_uri: str = TOKEN_URI
    timeout: float = 30.0

    @property
    def enabled(self) -> bool:
        return bool(self.client_email and self.private_key and self.spreadsheet_id)

    @classmethod
    def from_env(cls) -> "SheetMirrorConfig":
        private_key = os.getenv("GOOGLE_SHEETS_PRIVATE_KEY")
        if private_key:
            # Keys pasted into env files usually carry literal "\n"
            private_key = private_key.replace("\\n", "\n")
        return cls(
            client_email=os.getenv("GOOGLE_SHEETS_CLIENT_EMAIL") or None,
            private_key=private_key or None,
            spreadsheet_id=os.getenv("GOOGLE_SHEETS_ID") or None,
            tab_name=os.getenv("GOOGLE_SHEETS_TAB", "Issues"),
            sheet_id=int(os.getenv("GOOGLE_SHEETS_SHEET_ID", "0")),
        )


def issue_to_row(issue) -> List[str]:
    """The 8 mirrored columns of an issue, in sheet order."""
    fix_date = issue.expected_fix_date
    return [
        issue.title,
        _plain(issue.type),
        issue.description,
        _plain(issue.impact),
        _plain(issue.status),
        fix_date.isoformat()[:10] if fix_date else "",
        issue.created_by or "",
        issue.updated_by or "",
    ]


def _plain(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def a1_range(tab_name: str, cells: str) -> str:
    if tab_name.isalnum():
        return f"{tab_name}!{cells}"
    escaped = tab_name.replace("'", "''")
    return f"'{escaped}'!{cells}"


# ============================================================
# SERVICE ACCOUNT TOKENS
# ============================================================

class ServiceAccountTokenSource:
    """OAuth2 access tokens from a signed service-account assertion (RFC 7523)."""

    def __init__(self, client_email: str, private_key: str,
                 token_uri: str = TOKEN_URI, scope: str = SHEETS_SCOPE):
        self.client_email = client_email
        self.private_key = private_key
        self.token_uri = token_uri
        self.scope = scope
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def build_assertion(self, now: Optional[int] = None) -> str:
        issued_at = int(now if now is not None else time.time())
        claims = {
            "iss": self.client_email,
            "scope": self.scope,
            "aud": self.token_uri,
            "iat": issued_at,
            "exp": issued_at + 3600,
        }
        return jwt.encode(claims, self.private_key, algorithm="RS256")

    async def get_token(self, client: httpx.AsyncClient) -> str:
        if self._token and time.time() < self._expires_at - TOKEN_REFRESH_MARGIN:
            return self._token

        response = await client.post(
            self.token_uri,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": self.build_assertion()},
        )
        response.raise_for_status()
        payload = response.json()
        self._token = payload["access_token"]
        self._expires_at = time.time() + int(payload.get("expires_in", 3600))
        return self._token


# ============================================================
# MIRROR
# ============================================================

class SheetMirror:
    def __init__(self, config: SheetMirrorConfig,
                 http_client: Optional[httpx.AsyncClient] = None,
                 token_source: Optional[ServiceAccountTokenSource] = None):
        self.config = config
        self._client = http_client
        self._owns_client = http_client is None
        self._token_source = token_source
        if self._token_source is None and config.enabled:
            self._token_source = ServiceAccountTokenSource(
                config.client_email, config.private_key, token_uri=config.token_uri,
            )

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def columns_range(self) -> str:
        return a1_range(self.config.tab_name, f"{FIRST_COLUMN}:{LAST_COLUMN}")

    def row_range(self, row_number: int) -> str:
        return a1_range(
            self.config.tab_name,
            f"{FIRST_COLUMN}{row_number}:{LAST_COLUMN}{row_number}",
        )

    async def initialize_sheet(self) -> bool:
        """Write the header row if the tab has none. Returns True when it was written."""
        if not self.enabled:
            logger.info("Google Sheets initialization skipped - credentials not configured")
            return False

        try:
            existing = await self._read_values(self.row_range(1))
            if existing:
                return False
            await self._write_row(1, HEADER_ROW)
            logger.info(f"Wrote header row to {self.config.tab_name}")
            return True
        except (httpx.HTTPError, JOSEError, KeyError, ValueError) as exc:
            logger.error(f"Error initializing Google Sheets: {exc}", exc_info=True)
            raise SheetSyncError(f"Sheet initialization failed: {exc}") from exc

    async def sync_issue(self, issue, action: SyncAction) -> None:
        action = SyncAction(action)
        if not self.enabled:
            logger.info(f"Google Sheets sync skipped ({action.value} {issue.id}) - credentials not configured")
            return

        try:
            if action == SyncAction.CREATE:
                await self._append_row(issue_to_row(issue))
            elif action == SyncAction.UPDATE:
                await self._update_matching_row(issue)
            else:
                await self._delete_matching_row(issue)
        except (httpx.HTTPError, JOSEError, KeyError, ValueError) as exc:
            logger.error(
                f"Error syncing issue {issue.id} ({action.value}) to Google Sheets: {exc}",
                exc_info=True,
            )
            raise SheetSyncError(f"Sheet {action.value} failed for issue {issue.id}") from exc

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ── Row operations ───────────────────────────────────────

    async def find_row_index(self, title: str) -> Optional[int]:
        """0-based index of the first data row whose Title equals ``title``."""
        rows = await self._read_values(self.columns_range)
        for index, row in enumerate(rows):
            if index == 0:
                continue  # header
            if row and row[0] == title:
                return index
        return None

    async def _append_row(self, row: List[str]) -> None:
        await self._request(
            "POST",
            f"/values/{self._quote(self.columns_range)}:append",
            params={"valueInputOption": "RAW"},
            json={"values": [row]},
        )

    async def _update_matching_row(self, issue) -> None:
        index = await self.find_row_index(issue.title)
        if index is None:
            logger.info(f"No sheet row titled {issue.title!r}; update dropped")
            return
        await self._write_row(index + 1, issue_to_row(issue))

    async def _delete_matching_row(self, issue) -> None:
        index = await self.find_row_index(issue.title)
        if index is None:
            logger.info(f"No sheet row titled {issue.title!r}; delete skipped")
            return
        await self._request(
            "POST",
            ":batchUpdate",
            json={
                "requests": [{
                    "deleteDimension": {
                        "range": {
                            "sheetId": self.config.sheet_id,
                            "dimension": "ROWS",
                            "startIndex": index,
                            "endIndex": index + 1,
                        },
                    },
                }],
            },
        )

    async def _write_row(self, row_number: int, row: List[str]) -> None:
        cells = self.row_range(row_number)
        await self._request(
            "PUT",
            f"/values/{self._quote(cells)}",
            params={"valueInputOption": "RAW"},
            json={"range": cells, "majorDimension": "ROWS", "values": [row]},
        )

    async def _read_values(self, cells: str) -> List[List[str]]:
        payload = await self._request("GET", f"/values/{self._quote(cells)}")
        return payload.get("values") or []

    # ── Transport ────────────────────────────────────────────

    @staticmethod
    def _quote(cells: str) -> str:
        return quote(cells, safe="!:'")

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
            self._owns_client = True
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        client = self._http()
        token = await self._token_source.get_token(client)
        url = f"{self.config.api_url}/{self.config.spreadsheet_id}{path}"
        response = await client.request(
            method, url, headers={"Authorization": f"Bearer {token}"}, **kwargs
        )
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()


def get_sheet_mirror(request: Request) -> SheetMirror:
    """FastAPI dependency: the mirror built at startup"""
    mirror = getattr(request.app.state, "sheet_mirror", None)
    if mirror is None:
        raise RuntimeError("Sheet mirror is not initialized; the application lifespan did not run")
    return mirror
