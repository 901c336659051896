from __future__ import annotations

import asyncio
import os
import tempfile
from datetime import UTC, datetime, timedelta

# Engine and settings are built at import time, so the environment must be in
# place before any qbo_connect module is imported.
_TMP_DIR = tempfile.mkdtemp(prefix="qbo_connect_tests_")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP_DIR}/qbo_connect_test.db")
os.environ.setdefault("QUICKBOOKS_ENCRYPTION_KEY", "test-master-secret")
os.environ.setdefault("CREDENTIAL_KDF_ITERATIONS", "1000")
os.environ.setdefault("QBO_CLIENT_ID", "client-id")
os.environ.setdefault("QBO_CLIENT_SECRET", "client-secret")
os.environ.setdefault("QBO_REDIRECT_URI", "https://app.example.com/qbo/callback")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from qbo_connect.db import Base  # noqa: E402
from qbo_connect import db_models  # noqa: F401,E402
from qbo_connect.metrics import metrics  # noqa: E402
from qbo_connect.services.cipher import TokenCipher  # noqa: E402
from qbo_connect.services.credential_store import InMemoryCredentialStore  # noqa: E402
from qbo_connect.services.quickbooks_client import TokenResponse  # noqa: E402
from qbo_connect.services.token_manager import TokenLifecycleManager  # noqa: E402

TEST_SECRET = "test-master-secret"
TEST_ITERATIONS = 1000


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeTokenProvider:
    """Stands in for the Intuit token endpoint."""

    def __init__(self) -> None:
        self.refresh_calls = 0
        self.exchange_calls = 0
        self.revoke_calls = 0
        self.refresh_tokens_seen: list[str] = []
        self.revoked_tokens: list[str] = []
        self.refresh_error: Exception | None = None
        self.exchange_error: Exception | None = None
        self.delay = 0.0
        self.on_refresh = None
        self.expires_in = 3600
        self.refresh_expires_in: int | None = 8_726_400

    def _tokens(self, prefix: str, n: int) -> TokenResponse:
        return TokenResponse(
            access_token=f"{prefix}-access-{n}",
            refresh_token=f"{prefix}-refresh-{n}",
            expires_in=self.expires_in,
            x_refresh_token_expires_in=self.refresh_expires_in,
        )

    async def exchange_code(self, code: str) -> TokenResponse:
        self.exchange_calls += 1
        if self.exchange_error is not None:
            raise self.exchange_error
        return self._tokens("code", self.exchange_calls)

    async def refresh(self, refresh_token: str) -> TokenResponse:
        self.refresh_calls += 1
        self.refresh_tokens_seen.append(refresh_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.on_refresh is not None:
            self.on_refresh()
        if self.refresh_error is not None:
            raise self.refresh_error
        return self._tokens("refreshed", self.refresh_calls)

    async def revoke(self, token: str) -> bool:
        self.revoke_calls += 1
        self.revoked_tokens.append(token)
        return True


@pytest.fixture(autouse=True)
def _isolate_global_state():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TEST_SECRET, iterations=TEST_ITERATIONS)


@pytest.fixture
def provider() -> FakeTokenProvider:
    return FakeTokenProvider()


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def manager(credential_store, cipher, provider, clock) -> TokenLifecycleManager:
    return TokenLifecycleManager(
        store=credential_store,
        cipher=cipher,
        provider=provider,
        refresh_buffer_seconds=300,
        clock=clock,
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()
