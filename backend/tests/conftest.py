# tests/conftest.py — Shared test fixtures
import os

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"

from models import (  # noqa: E402
    Base, MemberRole, Project, ProjectMember, Task, Tenant, TenantPlan, User, UserRole,
)
from audit import AuditRecorder, get_audit_recorder  # noqa: E402
from auth import AuthService, _login_attempts  # noqa: E402
from database import get_db_session  # noqa: E402
from notifier import ConnectionManager, RealtimeNotifier, get_notifier  # noqa: E402
from main import app  # noqa: E402

PASSWORD = "Password123"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def connections():
    return ConnectionManager()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, connections):
    """HTTP test client with DB, audit and notifier dependencies pointed at the test database"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    recorder = AuditRecorder(session_factory)
    notifier = RealtimeNotifier(connections, session_factory)

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_audit_recorder] = lambda: recorder
    app.dependency_overrides[get_notifier] = lambda: notifier
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def clear_login_attempts():
    _login_attempts.clear()
    yield
    _login_attempts.clear()


# ============================================================
# DATA
# ============================================================

async def make_tenant(db, name: str, subdomain: str, is_active: bool = True) -> Tenant:
    tenant = Tenant(name=name, subdomain=subdomain, plan=TenantPlan.PRO, settings={}, is_active=is_active)
    db.add(tenant)
    await db.commit()
    return tenant


async def make_user(db, email: str, role: UserRole, tenant: Tenant = None, **kwargs) -> User:
    user = User(
        email=email,
        first_name=kwargs.pop("first_name", email.split("@")[0].title()),
        last_name=kwargs.pop("last_name", "Tester"),
        password_hash=AuthService.hash_password(kwargs.pop("password", PASSWORD)),
        role=role,
        tenant_id=tenant.id if tenant else None,
        is_active=kwargs.pop("is_active", True),
    )
    db.add(user)
    await db.commit()
    return user


async def make_project(db, tenant: Tenant, manager: User, members=(), leads=(), name="Apollo") -> Project:
    project = Project(tenant_id=tenant.id, name=name, owner_id=manager.id, manager_id=manager.id)
    for user in members:
        project.members.append(ProjectMember(user_id=user.id, role=MemberRole.MEMBER))
    for user in leads:
        project.members.append(ProjectMember(user_id=user.id, role=MemberRole.LEAD))
    db.add(project)
    await db.commit()
    return project


async def make_task(db, project: Project, reporter: User, assignee: User = None, title="Write docs") -> Task:
    task = Task(
        tenant_id=project.tenant_id,
        project_id=project.id,
        title=title,
        reporter_id=reporter.id,
        assignee_id=assignee.id if assignee else None,
    )
    db.add(task)
    await db.commit()
    return task


@pytest_asyncio.fixture
async def tenant(db_session):
    return await make_tenant(db_session, "Acme Corp", "acme")


@pytest_asyncio.fixture
async def other_tenant(db_session):
    return await make_tenant(db_session, "Globex", "globex")


@pytest_asyncio.fixture
async def org_admin(db_session, tenant):
    return await make_user(db_session, "admin@acme.example.com", UserRole.ORG_ADMIN, tenant)


@pytest_asyncio.fixture
async def project_manager(db_session, tenant):
    return await make_user(db_session, "pm@acme.example.com", UserRole.PROJECT_MANAGER, tenant)


@pytest_asyncio.fixture
async def employee(db_session, tenant):
    return await make_user(db_session, "alice@acme.example.com", UserRole.EMPLOYEE, tenant)


@pytest_asyncio.fixture
async def other_employee(db_session, tenant):
    return await make_user(db_session, "bob@acme.example.com", UserRole.EMPLOYEE, tenant)


@pytest_asyncio.fixture
async def other_org_admin(db_session, other_tenant):
    return await make_user(db_session, "admin@globex.example.com", UserRole.ORG_ADMIN, other_tenant)


@pytest_asyncio.fixture
async def super_admin(db_session):
    return await make_user(db_session, "root@platform.example.com", UserRole.SUPER_ADMIN)


@pytest_asyncio.fixture
async def project(db_session, tenant, project_manager, employee):
    return await make_project(db_session, tenant, project_manager, members=[employee])


@pytest_asyncio.fixture
async def task(db_session, project, project_manager, employee):
    return await make_task(db_session, project, project_manager, assignee=employee)


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token(AuthService.token_claims(user))
    return {"Authorization": f"Bearer {token}"}
