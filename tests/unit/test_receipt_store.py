"""
Unit tests -- SQL receipt store over in-memory SQLite.
"""
from datetime import datetime
from decimal import Decimal

import pytest

from src.db.receipt_store import ReceiptFilter, SqlReceiptStore
from tests.sqlite_store import add_receipt, make_engine

OCT_START = datetime(2026, 10, 1)
OCT_END = datetime(2026, 10, 31, 23, 59, 59)


@pytest.fixture(scope="module")
def store():
    engine = make_engine()
    add_receipt(engine, "u1", "Chick-fil-A", "10.50", datetime(2026, 10, 5, 12), "food")
    add_receipt(engine, "u1", "CHICK FIL A #123", "12.00", datetime(2026, 10, 10, 12))
    add_receipt(engine, "u1", "Starbucks", "5.25", datetime(2026, 10, 3, 8), "coffee")
    add_receipt(engine, "u1", "STARBUCKS", "1.00", datetime(2026, 10, 4, 8))
    add_receipt(engine, "u1", "Tierra Mia", "4.00", datetime(2026, 10, 6, 8), "Coffee")
    add_receipt(engine, "u1", "Starbucks Coffee", "6.00", datetime(2026, 9, 1, 8))
    add_receipt(engine, "u1", "Shell", "40.00", datetime(2026, 10, 12, 18), "gas")
    add_receipt(engine, "u1", "Shell", "35.00", OCT_START, "gas")
    add_receipt(engine, "u1", "100% Juice", "3.00", datetime(2026, 10, 7, 9))
    add_receipt(engine, "u2", "Starbucks", "100.00", datetime(2026, 10, 5, 8), "coffee")
    return SqlReceiptStore(engine)


def _oct(**kwargs):
    return ReceiptFilter(user_id="u1", start=OCT_START, end=OCT_END, **kwargs)


def test_sum_over_variants(store):
    total = store.aggregate_sum(_oct(merchant_any=("chick-fil-a", "chick fil a")))
    assert total == Decimal("22.50")


def test_sum_is_case_insensitive_substring(store):
    assert store.aggregate_sum(_oct(merchant_any=("starbucks",))) == Decimal("6.25")


def test_category_or_merchant_filter(store):
    total = store.aggregate_sum(_oct(category_any=("coffee",), uncategorized_merchant_any=("starbucks", "tierra mia")))
    assert total == Decimal("10.25")


@pytest.fixture()
def fragment_store():
    engine = make_engine()
    add_receipt(engine, "u1", "Shellfish Shack", "80.00", datetime(2026, 10, 2, 19), "food")
    add_receipt(engine, "u1", "Shellfish Shack", "30.00", datetime(2026, 10, 3, 19))
    add_receipt(engine, "u1", "SHELL OIL #57", "41.00", datetime(2026, 10, 4, 7))
    add_receipt(engine, "u1", "bp-station", "22.00", datetime(2026, 10, 5, 7))
    add_receipt(engine, "u1", "Shell", "50.00", datetime(2026, 10, 6, 7), "gas")
    add_receipt(engine, "u1", "Chick-fil-A", "9.00", datetime(2026, 10, 7, 12))
    return SqlReceiptStore(engine)


def test_category_fragments_ignore_other_categories(fragment_store):
    flt = _oct(category_any=("gas",), uncategorized_merchant_any=("shell", "bp"))
    # one "Shellfish Shack" is tagged food, the other is no whole-word match for "shell"
    assert fragment_store.aggregate_sum(flt) == Decimal("113.00")


def test_fragment_alone_does_not_match_inside_words(fragment_store):
    assert fragment_store.aggregate_sum(_oct(uncategorized_merchant_any=("shell",))) == Decimal("41.00")
    assert fragment_store.aggregate_sum(_oct(uncategorized_merchant_any=("chick-fil-a",))) == Decimal("9.00")


def test_uncategorized_shellfish_not_counted_as_gas(fragment_store):
    flt = _oct(category_any=("gas",), uncategorized_merchant_any=("shell",))
    merchants = {r.merchant for r in fragment_store.find_many(flt)}
    assert merchants == {"SHELL OIL #57", "Shell"}


def test_sum_scoped_to_user(store):
    flt = ReceiptFilter(user_id="u2", start=OCT_START, end=OCT_END)
    assert store.aggregate_sum(flt) == Decimal("100.00")


def test_empty_sum_is_zero(store):
    total = store.aggregate_sum(_oct(merchant_any=("nonexistent",)))
    assert total == Decimal("0")


def test_window_bounds(store):
    inclusive = ReceiptFilter(user_id="u1", start=datetime(2026, 9, 1), end=OCT_START, merchant_any=("shell",))
    exclusive = ReceiptFilter(user_id="u1", start=datetime(2026, 9, 1), end=OCT_START,
                              end_inclusive=False, merchant_any=("shell",))
    assert store.aggregate_sum(inclusive) == Decimal("35.00")
    assert store.aggregate_sum(exclusive) == Decimal("0")


def test_like_wildcards_are_escaped(store):
    assert store.aggregate_sum(_oct(merchant_any=("100%",))) == Decimal("3.00")
    assert store.aggregate_sum(_oct(merchant_any=("_hell",))) == Decimal("0")


def test_group_by_merchant_orders_by_total(store):
    rows = store.group_by_merchant(_oct())
    assert rows[0] == {"merchant": "Shell", "total": Decimal("75.00")}
    totals = [r["total"] for r in rows]
    assert totals == sorted(totals, reverse=True)


def test_group_by_merchant_folds_case(store):
    rows = store.group_by_merchant(_oct(merchant_any=("starbucks",)))
    assert len(rows) == 1
    assert rows[0]["merchant"].lower() == "starbucks"
    assert rows[0]["total"] == Decimal("6.25")


def test_group_by_merchant_limit(store):
    assert len(store.group_by_merchant(_oct(), limit=2)) == 2


def test_find_many_ordered_and_limited(store):
    records = store.find_many(_oct(), limit=3)
    assert [r.total for r in records] == [Decimal("40.00"), Decimal("35.00"), Decimal("12.00")]
    assert records[0].merchant == "Shell"
    assert records[0].currency == "USD"
    assert isinstance(records[0].purchase_date, datetime)
