"""Pytest configuration and fixtures."""

import os
from collections.abc import Generator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("SUPABASE_SIGNING_KEY_JWK", "test-signing-key-jwk")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("STRIPE_MODE", "test")
os.environ.setdefault("TEST_SECRET_KEY", "sk_test_stripe_secret_key")
os.environ.setdefault("TEST_WEBHOOK_SECRET", "whsec_test_webhook_secret")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_stripe_publishable_key")

from tests.support import (  # noqa: E402
    PRODUCT_ID,
    SECOND_VARIANT_ID,
    SERVICE_MODULES,
    VARIANT_ID,
    InMemoryStore,
    make_token_payload,
)


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    get_settings.cache_clear()
    settings = get_settings()
    yield settings
    get_settings.cache_clear()


@pytest.fixture
def store() -> InMemoryStore:
    """Provide an in-memory store holding a small catalogue."""
    memory = InMemoryStore()
    memory.seed("products", {"id": PRODUCT_ID, "name": "Starter Template"})
    memory.seed(
        "variants",
        {"id": VARIANT_ID, "product_id": PRODUCT_ID, "name": "Basic", "price": "10.00"},
        {"id": SECOND_VARIANT_ID, "product_id": PRODUCT_ID, "name": "Pro", "price": "25.50"},
    )
    return memory


@pytest.fixture
def patched_store(store: InMemoryStore) -> Generator[InMemoryStore, None, None]:
    """Make every service default to the in-memory store."""
    patches = [patch(f"{module}.get_store", return_value=store) for module in SERVICE_MODULES]
    for p in patches:
        p.start()
    yield store
    for p in patches:
        p.stop()


@pytest.fixture
def mock_stripe() -> Generator[MagicMock, None, None]:
    """Provide a mocked Stripe module for the payment gateway."""
    mock = MagicMock()
    with patch("src.services.payment_gateway.get_stripe", return_value=mock):
        yield mock


@pytest.fixture
def mock_jwt() -> Generator[MagicMock, None, None]:
    """Accept any bearer token as the test user."""
    with patch("src.api.deps.decode_jwt", return_value=make_token_payload()) as mock:
        yield mock


@pytest.fixture
def auth_headers(mock_jwt: MagicMock) -> dict[str, str]:
    """Authorization header for the test user."""
    return {"Authorization": "Bearer valid-token"}


@pytest.fixture
def admin_headers() -> Generator[dict[str, str], None, None]:
    """Authorization header for an admin user."""
    with patch("src.api.deps.decode_jwt", return_value=make_token_payload(role="admin")):
        yield {"Authorization": "Bearer admin-token"}


@pytest.fixture
def client(patched_store: InMemoryStore, mock_stripe: MagicMock) -> Generator[TestClient, None, None]:
    """Provide a test client for the FastAPI application.

    Yields:
        TestClient: FastAPI test client backed by the in-memory store.
    """
    from src.main import app

    with TestClient(app) as test_client:
        yield test_client
