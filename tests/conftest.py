# tests/conftest.py
# Shared fixtures and in-memory fakes for the Mindbody and Cayman adapters

import asyncio
import os
import sys
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

from config import Settings  # noqa: E402
from schemas.checkout import (  # noqa: E402
    CartCheckout,
    HostedPaymentRequest,
    HostedPaymentResult,
    Session,
    SessionCustomer,
    SessionLine,
)
from services.cayman_client import IGatewayClient  # noqa: E402
from services.mindbody_client import IDownstreamClient  # noqa: E402
from storage.idempotency import IdempotencyGuard  # noqa: E402
from storage.session_store import InMemorySessionStore  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"


class FakeDownstream(IDownstreamClient):
    """Records every Mindbody call; failures are injected per operation."""

    def __init__(
        self,
        customer_id: str = "1001",
        receipt: Optional[Dict[str, Any]] = None,
        services: Optional[Dict[str, Dict[str, Any]]] = None,
        delay: float = 0.0,
    ):
        self.customer_id = customer_id
        self.receipt = receipt if receipt is not None else {"ReceiptId": 555}
        self.services = services or {}
        self.delay = delay
        self.customer_error: Optional[Exception] = None
        self.checkout_error: Optional[Exception] = None
        self.customer_calls: List[tuple] = []
        self.checkout_calls: List[CartCheckout] = []

    async def find_or_create_customer(self, email, first_name, last_name):
        self.customer_calls.append((email, first_name, last_name))
        await asyncio.sleep(self.delay)
        if self.customer_error:
            raise self.customer_error
        return self.customer_id

    async def checkout_cart(self, cart):
        self.checkout_calls.append(cart)
        await asyncio.sleep(self.delay)
        if self.checkout_error:
            raise self.checkout_error
        return self.receipt

    async def get_service_by_id(self, service_id):
        return self.services.get(service_id)

    @property
    def calls(self) -> int:
        return len(self.customer_calls) + len(self.checkout_calls)


class FakeGateway(IGatewayClient):
    def __init__(self, result: Optional[HostedPaymentResult] = None, error: Optional[Exception] = None):
        self.result = result or HostedPaymentResult(
            ok=True,
            redirect_url="https://pay.cayman.test/consumer/abc123",
            raw={"result_code": "000", "consumer-url": "https://pay.cayman.test/consumer/abc123"},
        )
        self.error = error
        self.requests: List[HostedPaymentRequest] = []

    async def create_hosted_payment(self, request):
        self.requests.append(request)
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def settings(monkeypatch, tmp_path):
    """Settings built from a clean test environment"""
    for key in ("CAYMAN_API_KEY", "CAYMAN_API_USERNAME", "CAYMAN_API_PASSWORD"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://bridge.test")
    monkeypatch.setenv("CAYMAN_API_BASE_URL", "https://cayman.test/api")
    monkeypatch.setenv("CAYMAN_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("MINDBODY_BASE_URL", "https://mindbody.test/public/v6")
    monkeypatch.setenv("MINDBODY_API_KEY", "mb_key")
    monkeypatch.setenv("MINDBODY_SITE_ID", "-99")
    monkeypatch.setenv("MINDBODY_PAYMENT_METHOD_ID", "25")
    monkeypatch.setenv("TENANTS_PATH", str(tmp_path / "tenants.json"))
    monkeypatch.setenv("STALE_PROCESSING_TIMEOUT_SECONDS", "0")
    return Settings()


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def guard():
    return IdempotencyGuard()


@pytest.fixture
def downstream():
    return FakeDownstream(services={"42": {"Id": 42, "Name": "Drop-in Class", "OnlinePrice": 19.99}})


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_session():
    """Factory for the canonical two-seat drop-in session"""

    def _make(session_id: str = "sess_1", **overrides) -> Session:
        fields = dict(
            id=session_id,
            site_key="default",
            customer=SessionCustomer(email="ada@example.com", first_name="Ada", last_name="Lovelace"),
            lines=[SessionLine(product_id="42", name="Drop-in Class", unit_price=Decimal("19.99"), quantity=2)],
        )
        fields.update(overrides)
        return Session(**fields)

    return _make


@pytest.fixture
def services(settings, store, guard, downstream, gateway):
    from api.deps import ServiceContainer

    return ServiceContainer(settings, store=store, guard=guard, downstream=downstream, gateway=gateway)


@pytest.fixture
def client(settings, services):
    """TestClient over an app wired to the in-memory fakes"""
    from fastapi.testclient import TestClient

    from api.server import create_app

    with TestClient(create_app(settings, services)) as test_client:
        yield test_client
