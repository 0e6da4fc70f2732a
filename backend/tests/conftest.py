# tests/conftest.py — Shared test fixtures
import os
import uuid
from typing import Optional

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["ADMIN_KEY"] = "test-admin-key"

from models import Base, Question, QuestionStatus, Role, Team, TeamMembership, Tenant, User
from auth import AuthService
from database import get_db_session, get_session_factory
from main import app

ADMIN_KEY = "test-admin-key"


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


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependencies (request sessions and audit writes)"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ============================================================
# TENANTS, TEAMS, USERS
# ============================================================

@pytest_asyncio.fixture
async def tenant(db_session):
    row = Tenant(id=str(uuid.uuid4()), slug="acme", name="Acme Corp")
    db_session.add(row)
    await db_session.commit()
    await db_session.refresh(row)
    return row


@pytest_asyncio.fixture
async def other_tenant(db_session):
    row = Tenant(id=str(uuid.uuid4()), slug="globex", name="Globex")
    db_session.add(row)
    await db_session.commit()
    await db_session.refresh(row)
    return row


async def make_team(db_session, tenant: Tenant, slug: str, name: Optional[str] = None) -> Team:
    team = Team(
        id=str(uuid.uuid4()),
        tenant_id=tenant.id,
        name=name or slug.title(),
        slug=slug,
        is_active=True,
    )
    db_session.add(team)
    await db_session.commit()
    await db_session.refresh(team)
    return team


async def make_user(db_session, tenant: Tenant, email: str, name: Optional[str] = None) -> User:
    user = User(
        id=str(uuid.uuid4()),
        tenant_id=tenant.id,
        email=email,
        name=name or email.split("@")[0].title(),
        sso_id=f"mock:{email}",
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


async def add_membership(db_session, user: User, team: Team, role: Role) -> TeamMembership:
    membership = TeamMembership(id=str(uuid.uuid4()), user_id=user.id, team_id=team.id, role=role)
    db_session.add(membership)
    await db_session.commit()
    await db_session.refresh(membership)
    return membership


async def make_question(
    db_session,
    tenant: Tenant,
    team: Optional[Team],
    body: str = "How do we request access to staging?",
    author: Optional[User] = None,
    **fields,
) -> Question:
    question = Question(
        id=str(uuid.uuid4()),
        tenant_id=tenant.id,
        team_id=team.id if team else None,
        author_id=author.id if author else None,
        body=body,
        status=fields.pop("status", QuestionStatus.OPEN),
        upvotes=fields.pop("upvotes", 0),
        **fields,
    )
    db_session.add(question)
    await db_session.commit()
    await db_session.refresh(question)
    return question


@pytest_asyncio.fixture
async def engineering(db_session, tenant):
    return await make_team(db_session, tenant, "engineering")


@pytest_asyncio.fixture
async def product(db_session, tenant):
    return await make_team(db_session, tenant, "product")


@pytest_asyncio.fixture
async def owner(db_session, tenant, engineering):
    """Owner of engineering"""
    user = await make_user(db_session, tenant, "owner@acme.io", "Olivia Owner")
    await add_membership(db_session, user, engineering, Role.OWNER)
    return user


@pytest_asyncio.fixture
async def admin(db_session, tenant, engineering):
    """Admin of engineering"""
    user = await make_user(db_session, tenant, "admin@acme.io", "Ada Admin")
    await add_membership(db_session, user, engineering, Role.ADMIN)
    return user


@pytest_asyncio.fixture
async def moderator(db_session, tenant, engineering):
    """Moderator of engineering only"""
    user = await make_user(db_session, tenant, "mod@acme.io", "Max Moderator")
    await add_membership(db_session, user, engineering, Role.MODERATOR)
    return user


@pytest_asyncio.fixture
async def member(db_session, tenant, engineering):
    """Plain member of engineering"""
    user = await make_user(db_session, tenant, "member@acme.io", "Mia Member")
    await add_membership(db_session, user, engineering, Role.MEMBER)
    return user


@pytest_asyncio.fixture
async def outsider(db_session, tenant):
    """Tenant user without any team"""
    return await make_user(db_session, tenant, "outsider@acme.io", "Oscar Outsider")


def get_auth_headers(user: User, tenant: Tenant) -> dict:
    """Generate auth headers for a user in a tenant"""
    token = AuthService.token_for_user(user)
    return {"Authorization": f"Bearer {token}", "X-Tenant-Id": tenant.slug}


def admin_key_headers(tenant: Tenant) -> dict:
    return {"X-Admin-Key": ADMIN_KEY, "X-Tenant-Id": tenant.slug}


def tenant_headers(tenant: Tenant) -> dict:
    return {"X-Tenant-Id": tenant.slug}
