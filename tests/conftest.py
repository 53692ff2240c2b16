"""Shared test fixtures and configuration."""

import os
import hmac
import time
import hashlib
import pytest
from typing import Optional

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("STRIPE_SECRET_KEY_TEST", "sk_test_dummy_key_for_testing")

from payments_mirror.connectors import SimulatedProvider, SimulatorConfig
from payments_mirror.database import (
    Base,
    LedgerStore,
    create_async_engine,
    get_async_session_factory,
)
from payments_mirror.mode import ModeCredentials, ModeName, ModeState
from payments_mirror.reconciliation import ReconciliationService

TEST_WEBHOOK_SECRET = "whsec_test_secret"
LIVE_WEBHOOK_SECRET = "whsec_live_secret"


def sign_payload(payload: str, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def credential_settings(
    test: Optional[ModeCredentials] = None,
    live: Optional[ModeCredentials] = None,
) -> dict:
    """Settings keyword arguments carrying the given credential sets."""
    fields = {}
    for suffix, credentials in (("test", test), ("live", live)):
        if credentials is not None:
            fields[f"stripe_secret_key_{suffix}"] = credentials.secret_key
            fields[f"stripe_publishable_key_{suffix}"] = credentials.publishable_key
            fields[f"stripe_webhook_secret_{suffix}"] = credentials.webhook_secret
    return fields


@pytest.fixture
def sign():
    """Return the webhook signing helper."""
    return sign_payload


@pytest.fixture
def test_credentials() -> ModeCredentials:
    return ModeCredentials(
        secret_key="sk_test_51Hsimulated0000",
        publishable_key="pk_test_51Hsimulated0000",
        webhook_secret=TEST_WEBHOOK_SECRET,
    )


@pytest.fixture
def live_credentials() -> ModeCredentials:
    return ModeCredentials(
        secret_key="sk_live_51Hsimulated0000",
        publishable_key="pk_live_51Hsimulated0000",
        webhook_secret=LIVE_WEBHOOK_SECRET,
    )


@pytest.fixture
def modes(test_credentials, live_credentials) -> ModeState:
    """Mode state with both credential sets, starting in test mode."""
    return ModeState({
        ModeName.TEST: test_credentials,
        ModeName.LIVE: live_credentials,
    })


@pytest.fixture
def simulator() -> SimulatedProvider:
    """Fresh simulated provider."""
    return SimulatedProvider(SimulatorConfig())


# Database fixtures
@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_async_session_factory(db_engine)


@pytest.fixture
def store(session_factory) -> LedgerStore:
    return LedgerStore(session_factory)


@pytest.fixture
def service(store, modes, simulator) -> ReconciliationService:
    """Reconciliation service over the simulator and an in-memory ledger."""
    return ReconciliationService(
        store=store,
        modes=modes,
        gateway_factory=simulator,
        provider_timeout=5.0,
    )


@pytest.fixture
def auth_headers():
    """Return headers with authentication."""
    return {"Authorization": f"Bearer {os.environ['API_KEY']}"}
