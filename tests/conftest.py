"""Pytest configuration and fixtures.

Provides common fixtures for all tests including:
- Database sessions over a throwaway SQLite file
- Test users, apps and tokens
- An execution runtime wired with deterministic collaborators
- An HTTP client bound to the FastAPI app
"""

import os
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")

import blockflow.models  # noqa: F401  (registers every table)
from blockflow.api.deps import create_access_token, get_db_session, hash_password
from blockflow.core.execution_engine import WorkflowExecutionEngine
from blockflow.core.queue import InProcessJobQueue
from blockflow.core.rate_limit import InMemoryRateLimiter
from blockflow.core.security import SecurityValidator
from blockflow.core.table_store import TableStore
from blockflow.integrations.email import EmailSender
from blockflow.integrations.media import LocalMediaStorage
from blockflow.integrations.ownership import SqlAppOwnership
from blockflow.integrations.publisher import InMemoryPublisher
from blockflow.main import app
from blockflow.models.app import App
from blockflow.models.execution import ExecutionJob
from blockflow.models.user import User
from blockflow.services.execution_service import ExecutionRuntime, init_execution_runtime


class RecordingEmailSender(EmailSender):
    """Keeps sent messages instead of talking SMTP."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def send(self, to, subject, body, html=False, sender=None) -> str | None:
        self.sent.append({"to": to, "subject": subject, "body": body, "html": html, "sender": sender})
        return f"<message-{len(self.sent)}@test>"


class FakeSummarizer:
    """Returns a canned summary and records what it was asked."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def summarize(self, text: str, api_key: str) -> str:
        self.calls.append((text, api_key))
        return "A short summary."


def mock_http_handler(request: httpx.Request) -> httpx.Response:
    """Stand-in for external APIs reached by ``http.request`` blocks."""
    if request.url.path == "/fail":
        return httpx.Response(500, json={"error": "boom"})
    if request.url.path == "/slow":
        raise httpx.ReadTimeout("timed out", request=request)
    if request.url.path == "/moved":
        return httpx.Response(302, headers={"Location": "http://169.254.169.254/latest/meta-data/"})
    if request.url.host == "169.254.169.254":
        return httpx.Response(200, json={"secret": "iam-credentials"})
    return httpx.Response(
        200,
        json={"method": request.method, "path": request.url.path, "token": "remote-token"},
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create async database engine over a fresh SQLite file."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'blockflow-test.db'}",
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> sessionmaker:
    return sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session."""
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user."""
    user = User(
        username="tester",
        email="test@example.com",
        hashed_password=hash_password("testpassword123"),
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def other_user(db_session: AsyncSession) -> User:
    user = User(username="intruder", hashed_password=hash_password("otherpassword123"))
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_app(db_session: AsyncSession, test_user: User) -> App:
    """Create an app owned by the test user."""
    entity = App(owner_id=test_user.id, name="CRM")
    db_session.add(entity)
    await db_session.commit()
    await db_session.refresh(entity)
    return entity


@pytest.fixture
def auth_headers(test_user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(test_user.id, role=test_user.role)}"}


@pytest.fixture
def other_headers(other_user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(other_user.id)}"}


@pytest.fixture
def publisher() -> InMemoryPublisher:
    return InMemoryPublisher()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def summarizer() -> FakeSummarizer:
    return FakeSummarizer()


@pytest.fixture
def upload_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def runtime(session_maker, publisher, email_sender, summarizer, upload_dir) -> ExecutionRuntime:
    """Execution runtime with in-memory and recording collaborators."""
    security = SecurityValidator(
        rate_limiter=InMemoryRateLimiter(),
        ownership=SqlAppOwnership(session_maker),
    )
    return ExecutionRuntime(
        session_maker=session_maker,
        security=security,
        publisher=publisher,
        media=LocalMediaStorage(str(upload_dir), "/media"),
        email=email_sender,
        summarizer=summarizer,
        http_transport=httpx.MockTransport(mock_http_handler),
        engine=WorkflowExecutionEngine(timeout=10),
    )


@pytest.fixture
def run_graph(runtime: ExecutionRuntime, test_app: App, test_user: User):
    """Run nodes and edges through the runtime as the app owner."""

    async def run(
        nodes: list[dict[str, Any]],
        edges: list[dict[str, Any]] | None = None,
        context: dict[str, Any] | None = None,
        user_id: str | None = None,
        transactional: bool = False,
    ):
        job = ExecutionJob(
            app_id=test_app.id,
            user_id=user_id or test_user.id,
            nodes=nodes,
            edges=edges or [],
            context=context or {},
            transactional=transactional,
        )
        return await runtime.run_job(job)

    return run


@pytest.fixture
def table_store(session_maker) -> TableStore:
    return TableStore(session_maker)


@pytest_asyncio.fixture
async def job_queue(runtime: ExecutionRuntime) -> AsyncGenerator[InProcessJobQueue, None]:
    queue = InProcessJobQueue(runtime.handle_job)
    yield queue
    await queue.close()


@pytest_asyncio.fixture
async def client(
    session_maker,
    runtime: ExecutionRuntime,
    job_queue: InProcessJobQueue,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client.

    Lifespan does not run under ASGITransport, so the runtime is installed
    here. Each request gets its own session, as in production.
    """
    init_execution_runtime(runtime, job_queue)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
