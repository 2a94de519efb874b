"""
Pytest configuration and fixtures.
"""
import hashlib
import json
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, Optional

import httpx
import pytest
import pytest_asyncio

from paytech_checkout.errors import DuplicateRecordError, StorageError
from paytech_checkout.main import app, get_config, get_provider, get_store
from paytech_checkout.models import ConfirmedPurchase, Item, PendingPurchase
from paytech_checkout.settings import PaymentConfig

API_KEY = "test_api_key"
API_SECRET = "test_api_secret"


class InMemoryStore:
    """Thread-safe stand-in for PurchaseStore with the same uniqueness rules."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.items: Dict[str, Item] = {}
        self.pending: Dict[str, PendingPurchase] = {}
        self.confirmed: Dict[str, ConfirmedPurchase] = {}
        self.fail_on: set = set()
        self.calls: list = []

    def add_item(self, item_id: str, title: str, price: Optional[Any]) -> None:
        self.items[item_id] = Item(id=item_id, title=title, price=price)

    def _check(self, op: str) -> None:
        self.calls.append(op)
        if op in self.fail_on:
            raise StorageError(f"{op} failed")

    def get_item(self, item_id: str) -> Optional[Item]:
        self._check("get_item")
        return self.items.get(item_id)

    def get_pending(self, ref_command: str) -> Optional[PendingPurchase]:
        self._check("get_pending")
        with self._lock:
            return self.pending.get(ref_command)

    def insert_pending(self, user_id, item_id, amount, ref_command) -> PendingPurchase:
        self._check("insert_pending")
        with self._lock:
            if ref_command in self.pending:
                raise DuplicateRecordError("Pending purchase already exists")
            row = PendingPurchase(
                ref_command=ref_command,
                user_id=user_id,
                item_id=item_id,
                amount=Decimal(amount),
                created_at=datetime.now(timezone.utc),
            )
            self.pending[ref_command] = row
            return row

    def insert_confirmed(self, purchase: ConfirmedPurchase) -> None:
        self._check("insert_confirmed")
        with self._lock:
            if purchase.ref_command in self.confirmed:
                raise DuplicateRecordError("Purchase already confirmed")
            self.confirmed[purchase.ref_command] = purchase

    def delete_pending(self, ref_command: str) -> bool:
        self._check("delete_pending")
        with self._lock:
            return self.pending.pop(ref_command, None) is not None

    def seed_pending(self, ref_command: str, user_id: str = "u1", item_id: str = "m1",
                     amount: Any = 500, created_at: Optional[datetime] = None) -> PendingPurchase:
        row = PendingPurchase(
            ref_command=ref_command,
            user_id=user_id,
            item_id=item_id,
            amount=Decimal(amount),
            created_at=created_at or datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        )
        self.pending[ref_command] = row
        return row


class FakeProvider:
    def __init__(self, status_code: int = 200, body: Optional[dict] = None) -> None:
        self.status_code = status_code
        self.body = body if body is not None else {"success": 1, "redirect_url": "https://paytech.sn/payment/checkout/tok123"}
        self.payloads: list = []

    async def request_payment(self, payload: dict):
        self.payloads.append(payload)
        return self.status_code, self.body


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def make_notification(ref_command: str, /, **overrides: Any) -> Dict[str, Any]:
    """IPN payload in PayTech's wire format, signed with the test credentials."""
    data = {
        "type_event": "sale_complete",
        "custom_field": json.dumps({"ref_command": ref_command}),
        "ref_command": "PT-998877",
        "item_name": "Track m1",
        "item_price": "500",
        "payment_method": "Orange Money",
        "client_phone": "221770000000",
        "api_key_sha256": sha256_hex(API_KEY),
        "api_secret_sha256": sha256_hex(API_SECRET),
    }
    data.update(overrides)
    return data


@pytest.fixture
def payment_config() -> PaymentConfig:
    return PaymentConfig(
        api_key=API_KEY,
        api_secret=API_SECRET,
        frontend_url="https://shop.example.com/",
        ipn_url="https://api.example.com/ipn",
        env="test",
    )


@pytest.fixture
def store() -> InMemoryStore:
    s = InMemoryStore()
    s.add_item("m1", "Track m1", Decimal("500"))
    return s


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest_asyncio.fixture
async def client(payment_config, store, provider) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client against the app with storage and PayTech swapped for fakes."""
    app.dependency_overrides[get_config] = lambda: payment_config
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_provider] = lambda: provider
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
