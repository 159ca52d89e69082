# tests/conftest.py
# Shared fixtures: a controllable clock, in-memory repositories behind the
# session service, and an ASGI-backed httpx client for the FastAPI app.

import httpx
import pytest  # type: ignore[import-not-found]
import pytest_asyncio  # type: ignore[import-not-found]

from app.middleware.auth import get_user_repository
from app.routers.sessions import get_service
from app.services.session_service import SessionService
from session_fakes import (
    USERS,
    FakeClock,
    FakePresenceRepository,
    FakeSessionRepository,
    FakeUserRepository,
    InMemoryStore,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def service(store: InMemoryStore, clock: FakeClock) -> SessionService:
    return SessionService(
        FakeSessionRepository(store),
        FakePresenceRepository(store),
        presence_timeout=15,
        max_retries=5,
        clock=clock,
    )


@pytest.fixture
def app(service: SessionService):
    from app.main_fastapi import create_app

    application = create_app(enable_tracing=False)
    application.dependency_overrides[get_service] = lambda: service
    application.dependency_overrides[get_user_repository] = lambda: FakeUserRepository(USERS)
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def http_client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
