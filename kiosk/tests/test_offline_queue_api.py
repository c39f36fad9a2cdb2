from fastapi.testclient import TestClient

from kiosk.app.main import create_app
from kiosk.app.runtime import OfflineRuntime
from kiosk.app.storage import MemoryKeyValueStore

from conftest import FailingKeyValueStore, FakeOrderBackend, SleepRecorder

AUTH = {"Authorization": "Bearer tok"}

ORDER = {
    "customerName": "Asha",
    "items": [
        {"productId": "prod-popcorn", "name": "Popcorn", "quantity": 2, "unitPrice": 150, "taxRate": 5},
        {"productId": "prod-cola", "name": "Cola", "quantity": 1, "unitPrice": 100, "discountPercentage": 10},
    ],
    "paymentMethod": " UPI ",
}


def _client(backend=None, kv=None):
    backend = backend or FakeOrderBackend()
    runtime = OfflineRuntime(
        kv if kv is not None else MemoryKeyValueStore(),
        client=backend.client(),
        sync_interval_s=3600,
        sleep=SleepRecorder(),
    )
    return TestClient(create_app(runtime)), backend


def test_health_and_request_id():
    client, _ = _client()
    with client:
        r = client.get("/health", headers={"X-Request-Id": "req-1"})
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.headers["X-Request-Id"] == "req-1"


def test_queue_endpoints_require_a_bearer_token():
    client, _ = _client()
    with client:
        assert client.post("/offline-queue/T1/orders", json=ORDER).status_code == 401
        assert client.get("/offline-queue/T1", headers={"Authorization": "Basic abc"}).status_code == 401


def test_add_order_queues_and_computes_totals():
    client, backend = _client()
    with client:
        r = client.post("/offline-queue/T1/orders", json=ORDER, headers=AUTH)
    assert r.status_code == 201
    data = r.json()
    assert data["pendingCount"] == 1
    order = data["order"]
    assert order["status"] == "pending"
    assert order["attempts"] == 0
    assert order["theaterId"] == "T1"
    assert order["queueId"].startswith("offline_")
    payload = order["payload"]
    assert payload["paymentMethod"] == "upi"
    assert payload["subtotal"] == 400.0
    assert payload["totalDiscount"] == 10.0
    assert payload["tax"] == 15.0
    assert payload["total"] == 405.0
    assert backend.submitted == []


def test_add_order_rejects_an_empty_cart():
    client, _ = _client()
    with client:
        r = client.post("/offline-queue/T1/orders", json={"customerName": "x", "items": []}, headers=AUTH)
    assert r.status_code == 422
    assert r.json()["detail"] == "validation failed"


def test_add_order_reports_storage_failure():
    client, _ = _client(kv=FailingKeyValueStore())
    with client:
        r = client.post("/offline-queue/T1/orders", json=ORDER, headers=AUTH)
    assert r.status_code == 507
    assert r.json()["detail"] == "offline storage unavailable"


def test_sync_drains_the_queue():
    client, backend = _client()
    with client:
        client.post("/offline-queue/T1/orders", json=ORDER, headers=AUTH)
        r = client.post("/offline-queue/T1/sync", headers=AUTH)
        view = client.get("/offline-queue/T1", headers=AUTH).json()
        status = client.get("/offline-queue/T1/status", headers=AUTH).json()
    assert r.status_code == 200
    assert r.json()["succeeded"] == 1
    assert r.json()["success"] is True
    assert backend.submitted[0]["customerName"] == "Asha"
    assert view["pendingCount"] == 0
    assert view["isSyncing"] is False
    assert view["queue"][0]["status"] == "synced"
    assert status["pendingCount"] == 0
    assert status["lastSyncTime"] is not None


def test_sync_while_backend_is_unreachable():
    client, backend = _client()
    with client:
        client.post("/offline-queue/T1/orders", json=ORDER, headers=AUTH)
        backend.online = False
        r = client.post("/offline-queue/T1/sync", headers=AUTH)
        view = client.get("/offline-queue/T1", headers=AUTH).json()
    body = r.json()
    assert body["offline"] is True
    assert body["success"] is False
    assert view["syncError"] == "No internet connection"
    assert view["pendingCount"] == 1
    assert view["connectionStatus"] == "offline"


def test_retry_failed_endpoint():
    client, backend = _client()
    backend.rules["Asha"] = (500, {"message": "boom"})
    with client:
        client.post("/offline-queue/T1/orders", json=ORDER, headers=AUTH)
        first = client.post("/offline-queue/T1/sync", headers=AUTH).json()
        backend.rules.clear()
        second = client.post("/offline-queue/T1/retry-failed", headers=AUTH).json()
    assert first["failed"] == 1
    assert second["succeeded"] == 1


def test_connectivity_report_updates_status():
    client, _ = _client()
    with client:
        r = client.post("/offline-queue/T1/connectivity", json={"online": False}, headers=AUTH)
    assert r.status_code == 200
    assert r.json()["isOnline"] is False


def test_catalog_cache_round_trip_and_stats():
    client, _ = _client()
    products = [{"_id": "prod-popcorn", "name": "Popcorn"}, {"_id": "prod-cola", "name": "Cola"}]
    with client:
        missing = client.get("/offline-queue/T1/catalog/products", headers=AUTH)
        put = client.put("/offline-queue/T1/catalog/products", json=products, headers=AUTH)
        got = client.get("/offline-queue/T1/catalog/products", headers=AUTH)
        client.put("/offline-queue/T1/catalog/categories", json=[{"name": "Snacks"}], headers=AUTH)
        client.post("/offline-queue/T1/orders", json=ORDER, headers=AUTH)
        stats = client.get("/offline-queue/T1/stats", headers=AUTH).json()
    assert missing.status_code == 404
    assert put.json() == {"ok": True, "count": 2}
    assert got.json()["products"] == products
    assert stats["queuedOrders"] == 1
    assert stats["pendingOrders"] == 1
    assert stats["cachedProducts"] == 2
    assert stats["cachedCategories"] == 1
    assert stats["lastSyncTime"] is None
