"""Test fixtures for the QE Coach backend.

Sets up a fresh in-memory SQLite database per test, overrides the async
engine and session factory, and provides a FastAPI app, an AsyncClient,
bearer-token helpers, a fake completion client and a fakeredis instance.
"""

import os
import time
from collections.abc import AsyncGenerator
from typing import Any, Callable

import fakeredis
import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Ensure tests use SQLite, unverified debug tokens and no real Auth0/OpenAI
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DEBUG"] = "true"
os.environ.pop("AUTH0_DOMAIN", None)
os.environ.pop("AUTH0_JWKS_URL", None)
os.environ.pop("OPENAI_API_KEY", None)

from app.config import get_settings  # noqa: E402
from app.core.llm import CompletionResult, get_llm_client  # noqa: E402
from app.db import engine as db_engine  # noqa: E402
from app.db.engine import build_engine, build_session_factory  # noqa: E402
from app.db.models import Base  # noqa: E402
from app.exceptions import LLMError  # noqa: E402
from app.main import create_app  # noqa: E402

ROLES_CLAIM = get_settings().roles_claim


class FakeLLMClient:
    """Scriptable stand-in for LLMClient.

    Set ``reply`` for the next completions, or ``error`` to make calls fail.
    Every call's messages are recorded in ``calls``.
    """

    def __init__(self, reply: str = "Start with the riskiest flow.") -> None:
        self.reply = reply
        self.error: Exception | None = None
        self.configured = True
        self.calls: list[dict[str, Any]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def complete(self, messages: list[dict[str, str]], max_tokens: int) -> CompletionResult:
        self.calls.append({"messages": messages, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        return CompletionResult(
            text=self.reply,
            model_used="fake-model",
            input_tokens=42,
            output_tokens=7,
            latency_ms=3,
        )


def make_token(
    sub: str = "auth0|user-1",
    roles: list[str] | None = None,
    email: str | None = "user@example.com",
    name: str | None = "Test User",
) -> str:
    """Build an HS256 token; debug mode decodes it without verification."""
    claims: dict[str, Any] = {"sub": sub, "iat": int(time.time())}
    if roles is not None:
        claims[ROLES_CLAIM] = roles
    if email:
        claims["email"] = email
    if name:
        claims["name"] = name
    return jwt.encode(claims, "qecoach-test-signing-secret-0123456789", algorithm="HS256")


def auth_headers(sub: str = "auth0|user-1", roles: list[str] | None = None, **kwargs) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(sub=sub, roles=roles, **kwargs)}"}


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory SQLite engine with all tables created."""
    test_engine = build_engine("sqlite+aiosqlite://")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return build_session_factory(engine)


@pytest.fixture(autouse=True)
def override_db_engine(engine: AsyncEngine, session_factory: async_sessionmaker[AsyncSession]):
    """Override global engine and async_session_factory used by app code."""
    original = (db_engine.engine, db_engine.async_session_factory)
    db_engine.engine = engine
    db_engine.async_session_factory = session_factory
    yield
    db_engine.engine, db_engine.async_session_factory = original


@pytest.fixture
def fake_llm() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
def redis():
    """Async fakeredis client on its own server."""
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
async def app(fake_llm: FakeLLMClient) -> Any:
    """FastAPI application instance for tests.

    Redis is disabled by default; tests that need it assign app.state.redis.
    """
    app = create_app()
    app.state.redis = None
    app.dependency_overrides[get_llm_client] = lambda: fake_llm
    return app


@pytest.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX AsyncClient bound to the FastAPI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
def user_headers() -> dict[str, str]:
    return auth_headers(sub="auth0|user-1", roles=[])


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return auth_headers(sub="auth0|admin-1", roles=["admin"], email="admin@example.com")


@pytest.fixture
def token_factory() -> Callable[..., dict[str, str]]:
    return auth_headers


@pytest.fixture
def llm_failure() -> LLMError:
    return LLMError("upstream timeout")
