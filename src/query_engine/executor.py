"""
Aggregation executor -- runs a ResolvedIntent against the receipt store.

  VendorSpend / CategorySpend / TimeSpend → SpendTotal
  TopMerchants                            → TopMerchantsResult
  Anomaly                                 → AnomalyResult

Every store call runs on a worker thread and is bounded by
``timeout_seconds``.  A store exception or timeout surfaces as
DataUnavailable; an empty aggregate is a genuine zero.
"""
from __future__ import annotations

import concurrent.futures
from decimal import Decimal
from typing import Any, Callable, TypeVar

from dateutil.relativedelta import relativedelta

from src.core.errors import DataUnavailable
from src.core.logging import get_logger
from src.core.utils import timer
from src.db.receipt_store import ReceiptFilter, ReceiptStore
from src.query_engine.models import (
    AggregateResult,
    AnomalyResult,
    IntentKind,
    MerchantTotal,
    Outlier,
    OutlierReason,
    ResolvedIntent,
    SpendTotal,
    TopMerchantsResult,
)
from src.query_engine.vendor_normalizer import normalize
from src.query_engine.vocabulary import Vocabulary, load_vocabulary

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_TOP_N = 5
ANOMALY_MULTIPLIER = 2.0
ANOMALY_HISTORY_MONTHS = 3
ANOMALY_SCAN_LIMIT = 10

_CENT = Decimal("0.01")


def _merchant_key(name: str) -> str:
    return " ".join(name.lower().split())


class AggregationExecutor:
    """Turns intents into store calls.

    Parameters
    ----------
    store : ReceiptStore
        The data store (``SqlReceiptStore`` in production).
    timeout_seconds : float
        Deadline for each individual store call.
    anomaly_multiplier : float
        A current-window receipt is an outlier when its total exceeds the
        historical per-receipt average times this value.
    anomaly_history_months : int
        Length of the history window that ends where the current window starts.
    anomaly_scan_limit : int
        How many of the largest current-window receipts are inspected.
    flag_new_vendors : bool
        Also flag receipts from merchants absent from the history window.
    """

    def __init__(
        self,
        store: ReceiptStore,
        vocabulary: Vocabulary | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        default_top_n: int = DEFAULT_TOP_N,
        anomaly_multiplier: float = ANOMALY_MULTIPLIER,
        anomaly_history_months: int = ANOMALY_HISTORY_MONTHS,
        anomaly_scan_limit: int = ANOMALY_SCAN_LIMIT,
        flag_new_vendors: bool = True,
        max_workers: int = 8,
    ):
        self.store = store
        self.vocabulary = vocabulary or load_vocabulary()
        self.timeout_seconds = timeout_seconds
        self.default_top_n = default_top_n
        self.anomaly_multiplier = anomaly_multiplier
        self.anomaly_history_months = anomaly_history_months
        self.anomaly_scan_limit = anomaly_scan_limit
        self.flag_new_vendors = flag_new_vendors
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="receipt-store",
        )

    # ── Public API ──────────────────────────────────────

    def execute(self, user_id: str, intent: ResolvedIntent) -> AggregateResult:
        """Run the aggregation for *intent*, scoped to *user_id*.

        Raises
        ------
        DataUnavailable
            The store raised or did not answer within the timeout.
        """
        kind = intent.kind
        if kind is IntentKind.TOP_MERCHANTS:
            return self._top_merchants(user_id, intent)
        if kind is IntentKind.ANOMALY:
            return self._anomalies(user_id, intent)
        return self._spend_total(user_id, intent)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    # ── Filters ─────────────────────────────────────────

    def build_filter(self, user_id: str, intent: ResolvedIntent) -> ReceiptFilter:
        """Store filter for the current window of *intent*.

        Category intents match the category column, plus uncategorised
        receipts whose merchant is one of the category's known merchants.
        """
        merchant_any: tuple[str, ...] = ()
        category_any: tuple[str, ...] = ()
        uncategorized_merchant_any: tuple[str, ...] = ()
        if intent.kind is IntentKind.VENDOR_SPEND:
            merchant_any = normalize(intent.vendor, self.vocabulary).variants
        elif intent.kind is IntentKind.CATEGORY_SPEND:
            category_any = (intent.category,)
            cat = self.vocabulary.category(intent.category)
            if cat is not None:
                uncategorized_merchant_any = cat.merchants
        return ReceiptFilter(
            user_id=user_id,
            start=intent.timeframe.start,
            end=intent.timeframe.end,
            merchant_any=merchant_any,
            category_any=category_any,
            uncategorized_merchant_any=uncategorized_merchant_any,
        )

    # ── Aggregations ────────────────────────────────────

    def _spend_total(self, user_id: str, intent: ResolvedIntent) -> SpendTotal:
        total = self._call(self.store.aggregate_sum, self.build_filter(user_id, intent))
        return SpendTotal(total=total or Decimal("0"))

    def _top_merchants(self, user_id: str, intent: ResolvedIntent) -> TopMerchantsResult:
        limit = intent.top_n or self.default_top_n
        rows = self._call(self.store.group_by_merchant, self.build_filter(user_id, intent), limit)
        merchants = sorted(
            (MerchantTotal(merchant=r["merchant"], total=r["total"]) for r in rows),
            key=lambda m: (-m.total, m.merchant.lower()),
        )
        return TopMerchantsResult(merchants=tuple(merchants[:limit]))

    def _anomalies(self, user_id: str, intent: ResolvedIntent) -> AnomalyResult:
        start = intent.timeframe.start
        history = ReceiptFilter(
            user_id=user_id,
            start=start - relativedelta(months=self.anomaly_history_months),
            end=start,
            end_inclusive=False,
        )
        history_total = self._call(self.store.aggregate_sum, history)
        history_rows = self._call(self.store.find_many, history)
        if not history_rows:
            logger.info("Anomaly scan user=%s: no history before %s", user_id, start.date())
            return AnomalyResult(multiplier=self.anomaly_multiplier)

        average = (Decimal(history_total) / len(history_rows)).quantize(_CENT)
        threshold = (average * Decimal(str(self.anomaly_multiplier))).quantize(_CENT)
        known_merchants = {_merchant_key(r.merchant) for r in history_rows}

        current = self._call(self.store.find_many, self.build_filter(user_id, intent), self.anomaly_scan_limit)
        outliers = []
        for r in current:
            reasons = []
            if average > 0 and r.total > threshold:
                reasons.append(OutlierReason.HIGH_AMOUNT)
            if self.flag_new_vendors and _merchant_key(r.merchant) not in known_merchants:
                reasons.append(OutlierReason.NEW_VENDOR)
            if reasons:
                outliers.append(Outlier(
                    merchant=r.merchant,
                    total=r.total,
                    purchase_date=r.purchase_date,
                    category=r.category,
                    receipt_id=r.id,
                    reasons=tuple(reasons),
                ))
        logger.info(
            "Anomaly scan user=%s: avg=%s threshold=%s scanned=%d flagged=%d",
            user_id, average, threshold, len(current), len(outliers),
        )
        return AnomalyResult(
            outliers=tuple(outliers),
            historical_average=average,
            threshold=threshold,
            multiplier=self.anomaly_multiplier,
        )

    # ── Internals ───────────────────────────────────────

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run one store call on the pool, bounded by the timeout."""
        name = getattr(fn, "__name__", "store call")
        future = self._pool.submit(fn, *args)
        try:
            with timer() as t:
                result = future.result(timeout=self.timeout_seconds)
            logger.debug("Store call %s took %dms", name, t["elapsed_ms"])
            return result
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            logger.warning("Store call %s timed out after %.1fs", name, self.timeout_seconds)
            raise DataUnavailable(f"{name} timed out after {self.timeout_seconds}s") from exc
        except DataUnavailable:
            raise
        except Exception as exc:
            logger.exception("Store call %s failed", name)
            raise DataUnavailable(f"{name} failed: {exc}") from exc
