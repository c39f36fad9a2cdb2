import asyncio
import json
import os
import sys

import httpx
import pytest

# Allow running pytest from either the repo root or from within `kiosk/`.
# Tests import `kiosk.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from kiosk.app.connectivity import ConnectivityMonitor  # noqa: E402
from kiosk.app.errors import StorageUnavailable  # noqa: E402
from kiosk.app.offline_queue import QueueStore  # noqa: E402
from kiosk.app.order_sync import OrderSyncEngine  # noqa: E402
from kiosk.app.storage import MemoryKeyValueStore  # noqa: E402

API_BASE = "http://orders.test/api"


class FakeOrderBackend:
    """Scriptable stand-in for the theater order API behind httpx.MockTransport."""

    def __init__(self):
        self.online = True
        self.submitted: list[dict] = []
        self.headers: list[httpx.Headers] = []
        self.health_checks = 0
        # customerName -> (status, json body) or an exception to raise
        self.rules: dict[str, object] = {}
        # Yield to the event loop mid-request so concurrent drains interleave.
        self.yield_during_request = False

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if self.yield_during_request:
            await asyncio.sleep(0)
        if not self.online:
            raise httpx.ConnectError("network unreachable", request=request)
        if request.url.path.endswith("/health"):
            self.health_checks += 1
            return httpx.Response(200, json={"ok": True})

        body = json.loads(request.content)
        rule = self.rules.get(body.get("customerName"))
        if isinstance(rule, Exception):
            raise rule
        self.submitted.append(body)
        self.headers.append(request.headers)
        if rule is not None:
            status, data = rule
            return httpx.Response(status, json=data)
        return httpx.Response(
            201,
            json={"success": True, "order": {"_id": f"srv-{len(self.submitted)}", "orderNumber": f"ORD-{len(self.submitted):04d}"}},
        )

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class FailingKeyValueStore(MemoryKeyValueStore):
    async def set(self, key, value):
        raise StorageUnavailable("database or disk is full")


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_engine(kv, backend, *, sleep=None, max_attempts=5, request_timeout_s=15.0):
    client = backend.client()
    store = QueueStore(kv)
    connectivity = ConnectivityMonitor(client, api_base_url=API_BASE, timeout_s=3.0)
    engine = OrderSyncEngine(
        store,
        client,
        connectivity,
        api_base_url=API_BASE,
        request_timeout_s=request_timeout_s,
        max_attempts=max_attempts,
        sleep=sleep or SleepRecorder(),
    )
    return store, engine, connectivity


def order_payload(customer: str, total: float = 150.0, payment_method: str = "cash", **extra) -> dict:
    payload = {
        "customerName": customer,
        "items": [{"productId": "prod-popcorn", "quantity": 1, "unitPrice": total, "specialInstructions": ""}],
        "orderNotes": "",
        "paymentMethod": payment_method,
        "subtotal": total,
        "tax": 0,
        "totalDiscount": 0,
        "total": total,
    }
    payload.update(extra)
    return payload


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def backend():
    return FakeOrderBackend()
