import hashlib
import hmac
import json
import time
from typing import List, Optional

import pytest
import stripe

from shared.utils import settings, StorageUnavailable, StorageWriteError
from shared.security_config import limiter

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Pin every setting the services read so the host environment never leaks in."""
    values = {
        "STRIPE_SECRET_KEY": "sk_test_123",
        "STRIPE_PUBLISHABLE_KEY": None,
        "STRIPE_PUBLISHABLE_KEY_TEST": "pk_test_123",
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "PRINTFUL_OAUTH_TOKEN": "pf_token",
        "PRINTFUL_STORE_ID": None,
        "SPOTIFY_CLIENT_ID": "client",
        "SPOTIFY_CLIENT_SECRET": "secret",
        "MONGO_URL": None,
        "SMTP_HOST": None,
        "SMTP_PORT": 587,
        "SMTP_USER": None,
        "SMTP_PASSWORD": None,
        "SMTP_FROM": None,
        "MERCHANT_EMAIL": None,
        "HEALTH_CHECK_SECRET": "health-secret",
        "VERCEL_URL": None,
        "PUBLIC_BASE_URL": "https://shop.example.com",
        "ALLOWED_ORIGINS": "",
        "DIGITAL_ACCESS_DAYS": 30,
        "DIGITAL_PRODUCT_KEYWORD": "sample pack",
    }
    for key, value in values.items():
        monkeypatch.setattr(settings, key, value)
    monkeypatch.setattr(limiter, "enabled", False)
    return settings


class FakeOrderStore:
    """In-memory stand-in for OrderStore with the same (row, created) contract."""

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.orders: List[dict] = []
        self.grants: List[dict] = []
        self.calls: List[str] = []
        self.write_error: Optional[Exception] = None
        self.grant_error_for: Optional[str] = None

    async def ping(self):
        self.calls.append("ping")

    async def find_order(self, session_id):
        self.calls.append("find_order")
        for order in self.orders:
            if order["session_id"] == session_id:
                return order
        return None

    async def save_order(self, order):
        self.calls.append("save_order")
        if self.write_error is not None:
            raise self.write_error
        for existing in self.orders:
            if existing["session_id"] == order.session_id:
                return existing, False
        row = {**order.model_dump(exclude={"id"}), "id": f"order_{len(self.orders) + 1}"}
        self.orders.append(row)
        return row, True

    async def create_digital_access(self, grant):
        self.calls.append("create_digital_access")
        if self.grant_error_for and self.grant_error_for == grant.product_id:
            raise StorageWriteError("grant rejected")
        row = {**grant.model_dump(exclude={"id"}), "id": f"grant_{len(self.grants) + 1}"}
        self.grants.append(row)
        return row

    def close(self):
        pass


class FakePayments:
    def __init__(self):
        self.created: List[dict] = []
        self.retrieved: List[tuple] = []
        self.session = {
            "id": "cs_test_123",
            "amount_total": 1500,
            "currency": "usd",
            "payment_status": "paid",
            "customer_details": {"email": "fan@example.com"},
        }
        self.line_items: Optional[dict] = None
        self.create_error: Optional[Exception] = None
        self.retrieve_error: Optional[Exception] = None

    async def create_checkout_session(self, line_items, success_url, cancel_url, metadata, customer_email=None):
        if self.create_error is not None:
            raise self.create_error
        self.created.append({
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "customer_email": customer_email,
        })
        return {"id": "cs_test_123", "url": "https://checkout.stripe.com/c/pay/cs_test_123"}

    async def retrieve_session(self, session_id, expand=None):
        self.retrieved.append((session_id, expand))
        if self.retrieve_error is not None:
            raise self.retrieve_error
        if expand:
            return {**self.session, "id": session_id, "line_items": self.line_items}
        return {**self.session, "id": session_id}


@pytest.fixture
def store():
    return FakeOrderStore()


@pytest.fixture
def payments():
    return FakePayments()


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> str:
    return json.dumps({"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}})


@pytest.fixture
def stripe_error():
    return stripe.StripeError("Stripe is down")


@pytest.fixture
def storage_unavailable():
    return StorageUnavailable("Database not configured")
