"""Shared pytest fixtures for backend tests."""
import os

# Must be set before app modules build the module-level engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from collections.abc import AsyncIterator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402

from app.core.database.engine import build_engine, build_sessionmaker, get_db, init_db  # noqa: E402
from app.features.permissions.dependencies import get_session_factory  # noqa: E402
from app.features.permissions.locks import EntityLockRegistry  # noqa: E402
from app.features.permissions.service import AuthorizationService  # noqa: E402


@pytest_asyncio.fixture()
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    """A fresh file-backed SQLite database per test, so separate sessions really are separate."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'access.sqlite'}")
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(engine)


@pytest_asyncio.fixture()
async def db(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def locks() -> EntityLockRegistry:
    return EntityLockRegistry()


@pytest.fixture()
def service(db: AsyncSession, locks: EntityLockRegistry, session_factory) -> AuthorizationService:
    return AuthorizationService(db, locks=locks, session_factory=session_factory)


@pytest_asyncio.fixture()
async def async_client(session_factory) -> AsyncIterator[AsyncClient]:
    """Provide an HTTPX async client bound to the FastAPI app and the test database."""
    from app.main import app

    async def _get_test_db() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()


class Scenario:
    """
    The account-write / editor fixture most service tests start from.

    Only ids are kept: a rolled-back mutation expires every loaded instance.
    """

    def __init__(self, service: AuthorizationService):
        self.service = service

    async def build(self) -> "Scenario":
        service = self.service
        account_write = await service.create_permission(
            name="account-write",
            description="Write accounts",
            resources=["account"],
            actions=["write"],
        )
        self.account_write = account_write.id
        reports_read = await service.create_permission(
            name="reports-read",
            description="Read reports",
            resources=["reports", "exports"],
            actions=["read"],
            category="Reports",
        )
        self.reports_read = reports_read.id
        content = await service.create_role_group(name="content", display_name="Content")
        self.content = content.id
        editor = await service.create_role(
            name="editor",
            display_name="Editor",
            group_id=self.content,
            permission_ids=[self.account_write],
        )
        self.editor = editor.id
        viewer = await service.create_role(
            name="viewer",
            display_name="Viewer",
            group_id=self.content,
            permission_ids=[self.reports_read],
        )
        self.viewer = viewer.id
        user, _ = await service.create_user(email="u@example.com", name="U")
        self.user = user.id
        return self


@pytest_asyncio.fixture()
async def scenario(service: AuthorizationService) -> Scenario:
    return await Scenario(service).build()
