"""
Unit tests -- query orchestrator: cache hits, degradation and composed failures.
No Postgres needed: SQLite store for the happy path, stub stores for failures.
"""
import threading
from datetime import datetime
from decimal import Decimal

import pytest

from src.core.config import Settings
from src.core.errors import CacheUnavailable
from src.query_engine.cache import ResultCache, fingerprint
from src.query_engine.classifier import IntentClassifier
from src.query_engine.composer import DATA_UNAVAILABLE_MESSAGE, INVALID_INPUT_MESSAGE
from src.query_engine.executor import AggregationExecutor
from src.query_engine.models import QueryAnswer
from src.query_engine.service import QueryOrchestrator, build_orchestrator
from src.db.receipt_store import SqlReceiptStore
from tests.sqlite_store import add_receipt, make_engine

NOW = datetime(2026, 10, 17, 12, 0)


def _orchestrator(store, cache=None, **executor_kwargs):
    return QueryOrchestrator(
        IntentClassifier(),
        AggregationExecutor(store, **executor_kwargs),
        cache if cache is not None else ResultCache(),
    )


@pytest.fixture()
def sql_store():
    engine = make_engine()
    add_receipt(engine, "u1", "Chick-fil-A", "20.00", datetime(2026, 10, 5, 12), "food")
    add_receipt(engine, "u1", "chick fil a", "25.92", datetime(2026, 10, 10, 12))
    add_receipt(engine, "u1", "Starbucks", "4.75", datetime(2026, 10, 11, 8), "coffee")
    add_receipt(engine, "u2", "Chick-fil-A", "99.00", datetime(2026, 10, 5, 12), "food")
    return SqlReceiptStore(engine)


class CountingStore:
    def __init__(self, total=Decimal("1.00")):
        self.total = total
        self.calls = 0

    def aggregate_sum(self, flt):
        self.calls += 1
        return self.total

    def group_by_merchant(self, flt, limit=None):
        self.calls += 1
        return []

    def find_many(self, flt, limit=None):
        self.calls += 1
        return []


class HangingStore(CountingStore):
    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def aggregate_sum(self, flt):
        self.release.wait(5)
        return Decimal("1.00")


class UnreachableCache(ResultCache):
    def get_or_compute(self, key, compute, ttl=None):
        raise CacheUnavailable("redis: connection refused")


# ── Happy path ───────────────────────────────────────────

def test_vendor_answer_contains_total(sql_store):
    answer = _orchestrator(sql_store).handle_query("How much did I spend at Chick-fil-A?", "u1", now=NOW)
    assert isinstance(answer, QueryAnswer)
    assert answer.success
    assert "$45.92" in answer.message
    assert answer.data == {"kind": "total", "total": "45.92"}
    assert answer.cached is False
    assert answer.intent.vendor == "chick-fil-a"


def test_repeat_question_is_served_from_cache(sql_store):
    orch = _orchestrator(sql_store)
    first = orch.handle_query("How much did I spend at Chick-fil-A?", "u1", now=NOW)
    second = orch.handle_query("chick fil a spending", "u1", now=NOW)
    assert second.cached is True
    assert second.message == first.message
    assert orch.cache_stats()["hit_count"] == 1


def test_same_day_requests_share_cache_entry(sql_store):
    orch = _orchestrator(sql_store)
    orch.handle_query("How much did I spend?", "u1", now=datetime(2026, 10, 17, 9, 0))
    later = orch.handle_query("How much did I spend?", "u1", now=datetime(2026, 10, 17, 21, 0))
    assert later.cached is True


def test_users_do_not_share_answers(sql_store):
    orch = _orchestrator(sql_store)
    orch.handle_query("How much did I spend at Chick-fil-A?", "u1", now=NOW)
    other = orch.handle_query("How much did I spend at Chick-fil-A?", "u2", now=NOW)
    assert other.cached is False
    assert "$99.00" in other.message


def test_invalidate_user_forces_recompute(sql_store):
    orch = _orchestrator(sql_store)
    orch.handle_query("How much did I spend at Chick-fil-A?", "u1", now=NOW)
    assert orch.invalidate_user("u1") == 1
    again = orch.handle_query("How much did I spend at Chick-fil-A?", "u1", now=NOW)
    assert again.cached is False


def test_works_without_cache():
    store = CountingStore()
    orch = QueryOrchestrator(IntentClassifier(), AggregationExecutor(store), cache=None)
    orch.handle_query("How much did I spend?", "u1", now=NOW)
    orch.handle_query("How much did I spend?", "u1", now=NOW)
    assert store.calls == 2
    assert orch.invalidate_user("u1") == 0


# ── Failure paths ────────────────────────────────────────

def test_store_timeout_returns_error_sentence_and_is_not_cached():
    store = HangingStore()
    cache = ResultCache()
    orch = _orchestrator(store, cache=cache, timeout_seconds=0.05)
    try:
        answer = orch.handle_query("How much did I spend at Chick-fil-A?", "u1", now=NOW)
    finally:
        store.release.set()
        orch.close()

    assert answer.message == DATA_UNAVAILABLE_MESSAGE
    assert answer.data == {"error": "DataUnavailable"}
    assert answer.error == "DataUnavailable"
    assert fingerprint("u1", answer.intent) not in cache
    assert cache.get(fingerprint("u1", answer.intent)) is None


@pytest.mark.parametrize("text", ["", "   ", None])
def test_invalid_input_gets_clarifying_question(text):
    store = CountingStore()
    answer = _orchestrator(store).handle_query(text, "u1", now=NOW)
    assert answer.message == INVALID_INPUT_MESSAGE
    assert answer.data == {"error": "InvalidInput"}
    assert answer.intent is None
    assert store.calls == 0


def test_cache_outage_degrades_to_direct_execution():
    store = CountingStore(total=Decimal("12.34"))
    orch = _orchestrator(store, cache=UnreachableCache())
    answer = orch.handle_query("How much did I spend?", "u1", now=NOW)
    assert answer.success
    assert "$12.34" in answer.message
    assert answer.cached is False
    assert store.calls == 1


def test_unexpected_error_never_escapes():
    class ExplodingExecutor(AggregationExecutor):
        def execute(self, user_id, intent):
            raise KeyError("boom")

    orch = QueryOrchestrator(IntentClassifier(), ExplodingExecutor(CountingStore()), ResultCache())
    answer = orch.handle_query("How much did I spend?", "u1", now=NOW)
    assert answer.data == {"error": "DataUnavailable"}
    assert answer.message == DATA_UNAVAILABLE_MESSAGE


def test_classifier_crash_never_escapes():
    class BrokenClassifier(IntentClassifier):
        def classify(self, raw_text, now=None):
            raise RuntimeError("classifier exploded")

    store = CountingStore()
    orch = QueryOrchestrator(BrokenClassifier(), AggregationExecutor(store), ResultCache())
    answer = orch.handle_query("How much did I spend?", "u1", now=NOW)
    assert answer.data == {"error": "DataUnavailable"}
    assert answer.message == DATA_UNAVAILABLE_MESSAGE
    assert answer.intent is None
    assert store.calls == 0


def test_enormous_time_window_still_answers():
    store = CountingStore(total=Decimal("7.00"))
    answer = _orchestrator(store).handle_query("How much did I spend in the last 5000 years?", "u1", now=NOW)
    assert answer.success
    assert "$7.00" in answer.message


def test_cache_failure_after_compute_does_not_requery_store():
    class FailsOnStore(ResultCache):
        def get_or_compute(self, key, compute, ttl=None):
            compute()
            raise CacheUnavailable("redis: write failed")

    store = CountingStore(total=Decimal("3.00"))
    answer = _orchestrator(store, cache=FailsOnStore()).handle_query("How much did I spend?", "u1", now=NOW)
    assert answer.success
    assert "$3.00" in answer.message
    assert store.calls == 1


def test_any_cache_backend_error_degrades_to_direct_execution():
    class BrokenBackend(ResultCache):
        def get_or_compute(self, key, compute, ttl=None):
            raise ConnectionError("socket closed")

    store = CountingStore(total=Decimal("5.00"))
    answer = _orchestrator(store, cache=BrokenBackend()).handle_query("How much did I spend?", "u1", now=NOW)
    assert answer.success
    assert "$5.00" in answer.message
    assert store.calls == 1


def test_category_answer_ignores_lookalike_merchants():
    engine = make_engine()
    add_receipt(engine, "u1", "Shellfish Shack", "80.00", datetime(2026, 10, 5, 19), "food")
    add_receipt(engine, "u1", "Shellfish Shack", "15.00", datetime(2026, 10, 6, 19))
    answer = _orchestrator(SqlReceiptStore(engine)).handle_query("How much did I spend on gas?", "u1", now=NOW)
    assert answer.success
    assert answer.message.startswith("You spent $0.00 on gas")


def test_latency_tracked(sql_store):
    answer = _orchestrator(sql_store).handle_query("coffee this month", "u1", now=NOW)
    assert answer.latency_ms >= 0
    assert "$4.75" in answer.message


# ── Factory ──────────────────────────────────────────────

def test_build_orchestrator_uses_settings():
    settings = Settings(cache_ttl_seconds=42, anomaly_multiplier=3.0, default_top_n=7)
    orch = build_orchestrator(store=CountingStore(), settings=settings, start_sweep=False)
    try:
        assert orch.cache_stats()["ttl_seconds"] == 42
        assert orch.executor.anomaly_multiplier == 3.0
        assert orch.classifier.default_top_n == 7
    finally:
        orch.close()
