"""
Unit tests -- aggregation executor against a stub store.
"""
import threading
from datetime import datetime
from decimal import Decimal

import pytest

from src.core.errors import DataUnavailable
from src.db.receipt_store import ReceiptRecord
from src.query_engine.executor import AggregationExecutor
from src.query_engine.models import (
    AnomalyResult,
    IntentKind,
    OutlierReason,
    ResolvedIntent,
    SpendTotal,
    TimeRange,
    TopMerchantsResult,
)

WINDOW = TimeRange(start=datetime(2026, 9, 17), end=datetime(2026, 10, 17, 23, 59))


class StubStore:
    """Records every filter it is handed and returns canned data."""

    def __init__(self, total=Decimal("0"), groups=None, history=None, current=None):
        self.total = total
        self.groups = groups or []
        self.history = history or []
        self.current = current or []
        self.calls = []

    def aggregate_sum(self, flt):
        self.calls.append(("aggregate_sum", flt, None))
        return self.total

    def group_by_merchant(self, flt, limit=None):
        self.calls.append(("group_by_merchant", flt, limit))
        return self.groups

    def find_many(self, flt, limit=None):
        self.calls.append(("find_many", flt, limit))
        rows = self.current if flt.end_inclusive else self.history
        return rows[:limit] if limit else rows


def _receipt(merchant, total, day=1, month=10):
    return ReceiptRecord(
        id=f"{merchant}-{month}-{day}",
        user_id="u1",
        merchant=merchant,
        category=None,
        total=Decimal(total),
        purchase_date=datetime(2026, month, day, 12, 0),
    )


def _intent(kind, **slots):
    return ResolvedIntent(kind=kind, timeframe=WINDOW, **slots)


# ── Spend totals ─────────────────────────────────────────

def test_vendor_spend_filters_on_variants():
    store = StubStore(total=Decimal("45.92"))
    result = AggregationExecutor(store).execute("u1", _intent(IntentKind.VENDOR_SPEND, vendor="chick-fil-a"))
    assert result == SpendTotal(total=Decimal("45.92"))
    _, flt, _ = store.calls[0]
    assert flt.user_id == "u1"
    assert {"chick-fil-a", "chick fil a", "chickfila"} <= set(flt.merchant_any)
    assert flt.category_any == ()
    assert (flt.start, flt.end) == (WINDOW.start, WINDOW.end)


def test_category_spend_filters_on_category_and_merchants():
    store = StubStore(total=Decimal("12.00"))
    AggregationExecutor(store).execute("u1", _intent(IntentKind.CATEGORY_SPEND, category="coffee"))
    _, flt, _ = store.calls[0]
    assert flt.category_any == ("coffee",)
    assert "starbucks" in flt.uncategorized_merchant_any
    assert flt.merchant_any == ()


def test_time_spend_has_no_text_filter():
    store = StubStore(total=Decimal("300"))
    AggregationExecutor(store).execute("u1", _intent(IntentKind.TIME_SPEND))
    _, flt, _ = store.calls[0]
    assert flt.merchant_any == () and flt.category_any == ()
    assert flt.uncategorized_merchant_any == ()


def test_missing_sum_is_zero():
    store = StubStore(total=None)
    result = AggregationExecutor(store).execute("u1", _intent(IntentKind.TIME_SPEND))
    assert result.total == Decimal("0")


# ── Top merchants ────────────────────────────────────────

def test_top_merchants_sorted_and_limited():
    groups = [
        {"merchant": "Target", "total": Decimal("80")},
        {"merchant": "Starbucks", "total": Decimal("120")},
        {"merchant": "Shell", "total": Decimal("95")},
    ]
    store = StubStore(groups=groups)
    result = AggregationExecutor(store).execute("u1", _intent(IntentKind.TOP_MERCHANTS, top_n=2))
    assert isinstance(result, TopMerchantsResult)
    assert [m.merchant for m in result.merchants] == ["Starbucks", "Shell"]
    assert store.calls[0][2] == 2


def test_top_merchants_default_n():
    store = StubStore()
    AggregationExecutor(store, default_top_n=5).execute("u1", _intent(IntentKind.TOP_MERCHANTS))
    assert store.calls[0][2] == 5


# ── Anomalies ────────────────────────────────────────────

def test_anomaly_flags_above_multiple_of_history_average():
    history = [_receipt("Kroger", "20.00", day=d, month=8) for d in (1, 2, 3, 4)]
    current = [_receipt("Best Buy", "899.99"), _receipt("Kroger", "41.00"), _receipt("Kroger", "39.00")]
    store = StubStore(total=Decimal("80.00"), history=history, current=current)
    result = AggregationExecutor(store, anomaly_multiplier=2.0).execute("u1", _intent(IntentKind.ANOMALY))
    assert isinstance(result, AnomalyResult)
    assert result.historical_average == Decimal("20.00")
    assert result.threshold == Decimal("40.00")
    assert [o.merchant for o in result.outliers] == ["Best Buy", "Kroger"]


def test_anomaly_history_window_excludes_current_window():
    store = StubStore(history=[_receipt("Kroger", "20.00", month=8)], total=Decimal("20.00"))
    AggregationExecutor(store, anomaly_history_months=3).execute("u1", _intent(IntentKind.ANOMALY))
    history_filters = [flt for name, flt, _ in store.calls if not flt.end_inclusive]
    assert history_filters
    for flt in history_filters:
        assert flt.start == datetime(2026, 6, 17)
        assert flt.end == WINDOW.start


def test_anomaly_scan_is_limited():
    store = StubStore(total=Decimal("10"), history=[_receipt("A", "10", month=8)])
    AggregationExecutor(store, anomaly_scan_limit=10).execute("u1", _intent(IntentKind.ANOMALY))
    current_calls = [limit for name, flt, limit in store.calls if name == "find_many" and flt.end_inclusive]
    assert current_calls == [10]


def test_anomaly_flags_merchants_missing_from_history():
    history = [_receipt("Kroger", "20.00", day=d, month=8) for d in (1, 2, 3, 4)]
    current = [_receipt("Best Buy", "899.99"), _receipt("Corner Deli", "12.00"), _receipt("KROGER", "15.00")]
    store = StubStore(total=Decimal("80.00"), history=history, current=current)
    result = AggregationExecutor(store).execute("u1", _intent(IntentKind.ANOMALY))
    reasons = {o.merchant: o.reasons for o in result.outliers}
    assert reasons == {
        "Best Buy": (OutlierReason.HIGH_AMOUNT, OutlierReason.NEW_VENDOR),
        "Corner Deli": (OutlierReason.NEW_VENDOR,),
    }


def test_new_vendor_flag_can_be_disabled():
    history = [_receipt("Kroger", "20.00", month=8)]
    current = [_receipt("Corner Deli", "12.00")]
    store = StubStore(total=Decimal("20.00"), history=history, current=current)
    result = AggregationExecutor(store, flag_new_vendors=False).execute("u1", _intent(IntentKind.ANOMALY))
    assert result.outliers == ()


def test_anomaly_without_history_flags_nothing():
    store = StubStore(current=[_receipt("Best Buy", "899.99")])
    result = AggregationExecutor(store).execute("u1", _intent(IntentKind.ANOMALY))
    assert result.outliers == ()


# ── Failure semantics ────────────────────────────────────

class BrokenStore(StubStore):
    def aggregate_sum(self, flt):
        raise ConnectionError("connection refused")


class SlowStore(StubStore):
    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def aggregate_sum(self, flt):
        self.release.wait(5)
        return Decimal("1")


def test_store_error_becomes_data_unavailable():
    with pytest.raises(DataUnavailable, match="connection refused"):
        AggregationExecutor(BrokenStore()).execute("u1", _intent(IntentKind.TIME_SPEND))


def test_store_timeout_becomes_data_unavailable():
    store = SlowStore()
    executor = AggregationExecutor(store, timeout_seconds=0.05)
    try:
        with pytest.raises(DataUnavailable, match="timed out"):
            executor.execute("u1", _intent(IntentKind.TIME_SPEND))
    finally:
        store.release.set()
        executor.shutdown()
