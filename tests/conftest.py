from __future__ import annotations

import asyncio
import sys
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure repo root is on sys.path so `import app` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.core.config import AppEnv, Settings  # noqa: E402
from app.main import app  # noqa: E402
from app.services import token_service  # noqa: E402
from app.services.registry import Services  # noqa: E402


class FakeClock:
    """Settable UTC clock; ``advance`` moves it forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def client() -> Iterator[TestClient]:
    """A client whose lifespan builds fresh in-memory services.

    Used as a context manager so startup/shutdown run and one event loop
    (the client's portal) serves every request; detached telemetry tasks
    spawned by one request keep running on that loop between requests.
    """
    with TestClient(app) as c:
        yield c


def services_of(client: TestClient) -> Services:
    return client.app.state.services  # type: ignore[attr-defined]


def drain(client: TestClient) -> None:
    """Wait for every detached telemetry task spawned so far."""
    client.portal.call(services_of(client).dispatcher.drain, None)  # type: ignore[union-attr]


def run(coro):
    """Drive one coroutine to completion (no pytest-asyncio needed)."""
    return asyncio.run(coro)


def mint_token(
    username: str = "test-user",
    roles: list[str] | None = None,
) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=username, roles=roles)


@pytest.fixture
def token() -> str:
    return mint_token()


@pytest.fixture
def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def make_settings(app_env: AppEnv = "test", **overrides) -> Settings:
    """Settings with in-memory backends and no retry backoff."""
    values = {
        "app_env": app_env,
        "log_level": "info",
        "log_json": False,
        "port": 8000,
        "database_url": None,
        "redis_url": None,
        "jwt_public_key": None,
        "analytics_max_retries": 3,
        "analytics_retry_backoff_ms": 0,
        "analytics_cache_ttl": 60,
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]
