"""
API tests -- FastAPI endpoints via TestClient (no live server or database needed).
The orchestrator dependency is overridden with one backed by in-memory SQLite.
"""
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from src.api.main import app
from src.api.routers.query import get_orchestrator
from src.db.receipt_store import SqlReceiptStore
from src.query_engine.cache import ResultCache
from src.query_engine.classifier import IntentClassifier
from src.query_engine.executor import AggregationExecutor
from src.query_engine.service import QueryOrchestrator
from tests.sqlite_store import add_receipt, make_engine


@pytest.fixture()
def client():
    engine = make_engine()
    recent = datetime.now() - timedelta(days=2)
    add_receipt(engine, "u1", "Starbucks", "4.50", recent, "coffee")
    add_receipt(engine, "u1", "Starbucks", "5.50", recent, "coffee")
    orchestrator = QueryOrchestrator(
        IntentClassifier(),
        AggregationExecutor(SqlReceiptStore(engine)),
        ResultCache(),
    )
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()
    orchestrator.close()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_query_vendor(client):
    resp = client.post("/query", json={"question": "How much did I spend at Starbucks?", "user_id": "u1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert "$10.00" in body["message"]
    assert body["data"] == {"kind": "total", "total": "10.00"}
    assert body["intent"]["kind"] == "VendorSpend"
    assert body["intent"]["vendor"] == "starbucks"
    assert body["cached"] is False


def test_query_second_call_cached(client):
    payload = {"question": "coffee spending", "user_id": "u1"}
    client.post("/query", json=payload)
    body = client.post("/query", json=payload).json()
    assert body["cached"] is True


def test_query_blank_question_is_not_a_server_error(client):
    resp = client.post("/query", json={"question": "   ", "user_id": "u1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is False
    assert body["error"] == "InvalidInput"
    assert body["intent"] is None


def test_query_requires_user(client):
    resp = client.post("/query", json={"question": "How much did I spend?"})
    assert resp.status_code == 422


def test_cache_stats(client):
    client.post("/query", json={"question": "How much did I spend?", "user_id": "u1"})
    resp = client.get("/cache/stats")
    assert resp.status_code == 200
    stats = resp.json()
    assert stats["size"] == 1
    assert stats["miss_count"] == 1
    assert "hit_rate" in stats
    assert stats["enabled"] is True


def test_cache_endpoints_without_cache():
    orchestrator = QueryOrchestrator(IntentClassifier(), AggregationExecutor(SqlReceiptStore(make_engine())))
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    try:
        client = TestClient(app)
        resp = client.get("/cache/stats")
        assert resp.status_code == 200
        assert resp.json()["enabled"] is False
        assert resp.json()["size"] == 0
        assert client.post("/cache/invalidate/u1").json() == {"user_id": "u1", "invalidated": 0}
        assert client.post("/cache/clear").json() == {"cleared": 0}
    finally:
        app.dependency_overrides.clear()
        orchestrator.close()


def test_cache_invalidate_user(client):
    client.post("/query", json={"question": "How much did I spend?", "user_id": "u1"})
    resp = client.post("/cache/invalidate/u1")
    assert resp.status_code == 200
    assert resp.json() == {"user_id": "u1", "invalidated": 1}


def test_cache_clear(client):
    client.post("/query", json={"question": "How much did I spend?", "user_id": "u1"})
    resp = client.post("/cache/clear")
    assert resp.json() == {"cleared": 1}
    assert client.get("/cache/stats").json()["size"] == 0


def test_vocabulary(client):
    resp = client.get("/vocabulary")
    assert resp.status_code == 200
    data = resp.json()
    assert any(m["canonical"] == "chick-fil-a" for m in data["merchants"])
    assert "coffee" in [c["name"] for c in data["categories"]]
    assert "last month" in data["time_phrases"]


def test_vocabulary_lists(client):
    assert "starbucks" in client.get("/vocabulary/merchants").json()["merchants"]
    assert "groceries" in client.get("/vocabulary/categories").json()["categories"]
