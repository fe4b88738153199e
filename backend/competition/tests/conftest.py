"""Common test fixtures for competition backend unit tests."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.pool import NullPool

from backend.competition.app.broker import TradeLockerClient
from backend.competition.app.config import BrokerSettings, SecuritySettings, Settings
from backend.competition.app.crypto import PasswordCipher
from backend.competition.app.dependencies import get_broker_client, get_session, get_settings
from backend.competition.app.main import create_app
from backend.competition.db.base import Base, create_engine, create_session, dispose_engine

from backend.competition.tests.utils import ADMIN_API_KEY, BROKER_API_KEY, CRON_SECRET, ENCRYPTION_KEY



class FakeTradeLocker:
    """In-memory stand-in for the broker REST API served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.logins: dict[tuple[str, str, str], str] = {}
        self.accounts: dict[str, list[dict[str, Any]]] = {}
        self.failing_account_tokens: set[str] = set()
        self.requests: list[httpx.Request] = []

    def add_login(
        self,
        *,
        email: str,
        password: str,
        server: str,
        accounts: list[dict[str, Any]],
        token: str | None = None,
    ) -> str:
        token = token or f"token-{len(self.logins) + 1}"
        self.logins[(email, password, server)] = token
        self.accounts[token] = accounts
        return token

    def calls(self, suffix: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path.endswith(suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/auth/jwt/token"):
            body = json.loads(request.content or b"{}")
            token = self.logins.get((body.get("email"), body.get("password"), body.get("server")))
            if token is None:
                return httpx.Response(401, json={"message": "Invalid credentials"})
            return httpx.Response(201, json={"accessToken": token, "refreshToken": f"refresh-{token}"})

        if path.endswith("/auth/jwt/all-accounts"):
            authorization = request.headers.get("authorization", "")
            token = authorization.removeprefix("Bearer ").strip()
            if token in self.failing_account_tokens:
                return httpx.Response(500, json={"message": "Upstream unavailable"})
            if token not in self.accounts:
                return httpx.Response(401, json={"message": "Invalid token"})
            return httpx.Response(200, json={"accounts": self.accounts[token]})

        return httpx.Response(404, json={"message": "Not found"})


@pytest.fixture(scope="session")
def db_url(tmp_path_factory: pytest.TempPathFactory) -> str:
    """Return a SQLite database URL located in a temporary directory."""

    db_path = tmp_path_factory.mktemp("competition-db") / "test.sqlite3"
    return f"sqlite+aiosqlite:///{db_path}"


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def db_engine(db_url: str) -> AsyncIterator[AsyncEngine]:
    """Initialise the global async engine used by competition tests."""

    engine = create_engine(db_url, echo=False, poolclass=NullPool)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await dispose_engine()


@pytest_asyncio.fixture(autouse=True)
async def clean_database(db_engine: AsyncEngine) -> AsyncIterator[None]:
    """Clean up all persisted state after each test case."""

    yield

    async with db_engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            await connection.execute(table.delete())


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Yield an :class:`AsyncSession` bound to the test database."""

    session = create_session()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> Callable[[], AsyncSession]:
    """Provide a helper to create fresh async sessions on demand."""

    def factory() -> AsyncSession:
        return create_session()

    return factory


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        security=SecuritySettings(
            encryption_key=ENCRYPTION_KEY,
            admin_api_key=ADMIN_API_KEY,
            cron_secret=CRON_SECRET,
        ),
        broker=BrokerSettings(api_key=BROKER_API_KEY),
    )


@pytest.fixture
def cipher() -> PasswordCipher:
    return PasswordCipher(ENCRYPTION_KEY)


@pytest.fixture
def fake_broker() -> FakeTradeLocker:
    return FakeTradeLocker()


@pytest_asyncio.fixture
async def broker_client(
    fake_broker: FakeTradeLocker, test_settings: Settings
) -> AsyncIterator[TradeLockerClient]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_broker.handler)) as http_client:
        yield TradeLockerClient(test_settings.broker, client=http_client)


@pytest.fixture
def app(db_session: AsyncSession, test_settings: Settings, broker_client: TradeLockerClient):
    """Create a FastAPI test application with database and broker overrides."""

    application = create_app()

    async def _override_session():
        yield db_session

    application.dependency_overrides[get_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_broker_client] = lambda: broker_client
    return application


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"x-admin-api-key": ADMIN_API_KEY}
