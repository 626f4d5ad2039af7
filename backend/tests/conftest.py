# tests/conftest.py — Shared test fixtures
import os
import re
import json
import uuid
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
for _var in ("GOOGLE_SHEETS_CLIENT_EMAIL", "GOOGLE_SHEETS_PRIVATE_KEY", "GOOGLE_SHEETS_ID"):
    os.environ.pop(_var, None)

from models import Base, User, UserRole
from auth import AuthService
from database import get_db_session
from sheet_mirror import (
    SheetMirror, SheetMirrorConfig,
    JWT_BEARER_GRANT, get_sheet_mirror,
)
from main import app

SPREADSHEET_ID = "spreadsheet-under-test"
SERVICE_ACCOUNT = "mirror@issue-tracker.iam.gserviceaccount.com"
FAKE_ACCESS_TOKEN = "ya29.fake-access-token"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


def _override_db(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    return override_get_db


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency and a disabled sheet mirror"""
    disabled_mirror = SheetMirror(SheetMirrorConfig())
    app.dependency_overrides[get_db_session] = _override_db(db_engine)
    app.dependency_overrides[get_sheet_mirror] = lambda: disabled_mirror
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ============================================================
# USERS
# ============================================================

async def _make_user(db_session, email, password, first_name=None, last_name=None):
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        password_hash=AuthService.hash_password(password),
        first_name=first_name,
        last_name=last_name,
        role=UserRole.ADMIN,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def admin_user(db_session):
    return await _make_user(db_session, "admin@issues.dev", "AdminPassword1", "Ada", "Admin")


@pytest_asyncio.fixture
async def other_admin(db_session):
    return await _make_user(db_session, "second@issues.dev", "SecondPassword1", "Sam", "Second")


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    return {"Authorization": f"Bearer {AuthService.create_token_for(user)}"}


def issue_payload(**overrides) -> dict:
    payload = {
        "title": "Crash on save",
        "type": "issue",
        "description": "The editor crashes when saving a large document",
        "impact": "High",
        "status": "open",
    }
    payload.update(overrides)
    return payload


# ============================================================
# GOOGLE SHEETS
# ============================================================

class FakeSpreadsheet:
    """In-memory stand-in for the Sheets v4 values/batchUpdate API and the token endpoint."""

    def __init__(self, rows=None, spreadsheet_id=SPREADSHEET_ID, tab="Issues"):
        self.rows = [list(row) for row in rows or []]
        self.spreadsheet_id = spreadsheet_id
        self.tab = tab
        self.calls = []
        self.token_requests = 0
        self.fail_status = None

    @property
    def data_rows(self):
        return self.rows[1:]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            return self._token(request)

        self.calls.append((request.method, request.url.path))
        if self.fail_status:
            return httpx.Response(self.fail_status, json={"error": {"message": "backend unavailable"}})
        if request.headers.get("Authorization") != f"Bearer {FAKE_ACCESS_TOKEN}":
            return httpx.Response(401, json={"error": {"message": "unauthenticated"}})

        prefix = f"/v4/spreadsheets/{self.spreadsheet_id}"
        path = request.url.path[len(prefix):]

        if request.method == "POST" and path == ":batchUpdate":
            for item in json.loads(request.content)["requests"]:
                span = item["deleteDimension"]["range"]
                del self.rows[span["startIndex"]:span["endIndex"]]
            return httpx.Response(200, json={"spreadsheetId": self.spreadsheet_id, "replies": [{}]})

        cells = path[len("/values/"):]
        if request.method == "POST" and cells.endswith(":append"):
            values = json.loads(request.content)["values"]
            self.rows.extend(list(v) for v in values)
            return httpx.Response(200, json={"updates": {"updatedRows": len(values)}})

        if request.method == "GET":
            if cells == f"{self.tab}!A1:H1":
                values = self.rows[:1]
            else:
                values = self.rows
            body = {"range": cells, "majorDimension": "ROWS"}
            if values:
                body["values"] = [list(v) for v in values]
            return httpx.Response(200, json=body)

        if request.method == "PUT":
            row_number = int(re.match(rf"{self.tab}!A(\d+):H\d+$", cells).group(1))
            while len(self.rows) < row_number:
                self.rows.append([])
            self.rows[row_number - 1] = list(json.loads(request.content)["values"][0])
            return httpx.Response(200, json={"updatedRows": 1})

        return httpx.Response(404, json={"error": {"message": f"unexpected {request.method} {path}"}})

    def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_requests += 1
        form = parse_qs(request.content.decode())
        if form.get("grant_type") != [JWT_BEARER_GRANT] or not form.get("assertion"):
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(200, json={"access_token": FAKE_ACCESS_TOKEN, "expires_in": 3600})


@pytest.fixture(scope="session")
def rsa_keys():
    """(private_pem, public_pem) for signing service-account assertions"""
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import rsa

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def sheet_config(rsa_keys):
    return SheetMirrorConfig(
        client_email=SERVICE_ACCOUNT,
        private_key=rsa_keys[0],
        spreadsheet_id=SPREADSHEET_ID,
    )


@pytest.fixture
def fake_sheet():
    return FakeSpreadsheet(rows=[
        ["Title", "Type", "Description", "Impact", "Status",
         "Expected Fix Date", "Created By", "Updated By"],
    ])


@pytest_asyncio.fixture
async def sheet_mirror(sheet_config, fake_sheet):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_sheet.handler))
    mirror = SheetMirror(sheet_config, http_client=http_client)
    yield mirror
    await http_client.aclose()


@pytest_asyncio.fixture
async def mirrored_client(db_engine, sheet_mirror):
    """HTTP test client whose mutations are mirrored into ``fake_sheet``"""
    app.dependency_overrides[get_db_session] = _override_db(db_engine)
    app.dependency_overrides[get_sheet_mirror] = lambda: sheet_mirror
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
