# tests/conftest.py — Shared test fixtures
import os
import uuid
from datetime import date

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests (a file, so separate sessions can race each other)
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("VERSION_WRITE_BACKOFF_MS", "5")

from models import Base, User, UserRole
from auth import AuthService
from database import build_engine, get_db_session
from incident_schemas import IncidentContent
from main import app

ORG_A = "org-alpha"
ORG_B = "org-bravo"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = build_engine(TEST_DB_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB dependency"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _make_user(session, email: str, role: UserRole, organisation_id: str) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=email.split("@")[0].title(),
        organisation_id=organisation_id,
        role=role,
        is_active=True,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session):
    """Member of organisation A (read + write)"""
    return await _make_user(db_session, "member@alpha.test", UserRole.MEMBER, ORG_A)


@pytest_asyncio.fixture
async def admin_user(db_session):
    """Admin of organisation A (read + write + delete)"""
    return await _make_user(db_session, "admin@alpha.test", UserRole.ORG_ADMIN, ORG_A)


@pytest_asyncio.fixture
async def auditor_user(db_session):
    """Read-only auditor of organisation A"""
    return await _make_user(db_session, "auditor@alpha.test", UserRole.AUDITOR, ORG_A)


@pytest_asyncio.fixture
async def other_org_user(db_session):
    """Admin of organisation B"""
    return await _make_user(db_session, "admin@bravo.test", UserRole.ORG_ADMIN, ORG_B)


@pytest.fixture
def content():
    """Factory for valid incident content"""

    def _content(**overrides) -> IncidentContent:
        data = {
            "detection_date": date(2024, 3, 1),
            "description": "Phishing e-mail led to a compromised mailbox",
            "incident_type": "phishing",
            "data_categories": ["contact", "identification"],
            "affected_subjects": 120,
            "consequences": "Contact details exposed",
            "measures_taken": "Password reset, MFA enforced",
            "internal_notes": "Suspect vendor account, do not publish",
        }
        data.update(overrides)
        return IncidentContent(**data)

    return _content


def content_payload(**overrides) -> dict:
    """JSON body for the incidents API"""
    data = {
        "detection_date": "2024-03-01",
        "description": "Laptop stolen from a car",
        "incident_type": "device_loss",
        "data_categories": ["employment"],
        "affected_subjects": 40,
        "internal_notes": "Device was not encrypted",
    }
    data.update(overrides)
    return data


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token_data = {
        "sub": user.id,
        "email": user.email,
        "organisation_id": user.organisation_id,
        "role": user.role.value if isinstance(user.role, UserRole) else user.role,
    }
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}
