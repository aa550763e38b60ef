"""
Query orchestrator -- classify -> fingerprint -> cache lookup -> execute -> compose.

Per request:

  Received → Classified → CacheLookup ─┬─ CacheHit ───────────┬→ Composed → Returned
                                       └─ CacheMiss → Executed ┘

Every path ends in a composed answer.  Typed failures become fixed
user-facing sentences with an ``error`` marker in ``data``; nothing raised
below this layer reaches the caller.  Only successful aggregates are
cached; the sentence is re-rendered on every hit.
"""
from __future__ import annotations

import time
from datetime import datetime
from typing import Any

from src.core.config import Settings, get_settings
from src.core.errors import CacheUnavailable, DataUnavailable, InvalidInput, SpendQueryError
from src.core.logging import get_logger
from src.db.receipt_store import ReceiptStore
from src.query_engine.cache import Fingerprint, ResultCache, fingerprint
from src.query_engine.classifier import IntentClassifier
from src.query_engine.composer import DATA_UNAVAILABLE_MESSAGE, INVALID_INPUT_MESSAGE, compose
from src.query_engine.executor import AggregationExecutor
from src.query_engine.models import AggregateResult, Query, QueryAnswer, ResolvedIntent
from src.query_engine.timeframe import anchor_for
from src.query_engine.vocabulary import load_vocabulary

logger = get_logger(__name__)


class QueryOrchestrator:
    """Answers spending questions for one process.

    Parameters
    ----------
    classifier : IntentClassifier
    executor : AggregationExecutor
    cache : ResultCache, optional
        When ``None`` every request executes directly.
    """

    def __init__(
        self,
        classifier: IntentClassifier,
        executor: AggregationExecutor,
        cache: ResultCache | None = None,
    ):
        self.classifier = classifier
        self.executor = executor
        self.cache = cache

    # ── Public API ──────────────────────────────────────

    def handle_query(self, raw_text: Any, user_id: str, now: datetime | None = None) -> QueryAnswer:
        """End-to-end: question text -> QueryAnswer (never raises)."""
        t0 = time.perf_counter()
        query = Query(raw_text=raw_text, user_id=user_id, received_at=now or datetime.now())
        anchor = anchor_for(query.received_at)

        try:
            intent = self.classifier.classify(query.raw_text, now=anchor)
            key = fingerprint(user_id, intent)
        except InvalidInput as exc:
            logger.info("Query rejected user=%s: %s", user_id, exc)
            return self._failure(INVALID_INPUT_MESSAGE, exc, t0)
        except Exception as exc:
            logger.exception("Unexpected failure classifying query user=%s", user_id)
            return self._failure(DATA_UNAVAILABLE_MESSAGE, DataUnavailable(str(exc)), t0)

        try:
            result, cached = self._lookup(key, user_id, intent)
            message = compose(intent, result)
        except DataUnavailable as exc:
            logger.warning("Query failed user=%s kind=%s: %s", user_id, intent.kind.value, exc)
            return self._failure(DATA_UNAVAILABLE_MESSAGE, exc, t0, intent)
        except Exception as exc:
            logger.exception("Unexpected failure answering user=%s kind=%s", user_id, intent.kind.value)
            return self._failure(DATA_UNAVAILABLE_MESSAGE, DataUnavailable(str(exc)), t0, intent)

        latency = int((time.perf_counter() - t0) * 1000)
        logger.info(
            "Query answered user=%s kind=%s cached=%s latency_ms=%d key=%s",
            user_id, intent.kind.value, cached, latency, key,
        )
        return QueryAnswer(
            message=message,
            data=result.model_dump(mode="json"),
            cached=cached,
            latency_ms=latency,
            intent=intent,
        )

    def invalidate_user(self, user_id: str) -> int:
        """Drop cached results for *user_id*; called after new receipts land."""
        if self.cache is None:
            return 0
        return self.cache.invalidate_user(user_id)

    def cache_stats(self) -> dict[str, Any]:
        return self.cache.stats() if self.cache is not None else {}

    def close(self) -> None:
        if self.cache is not None:
            self.cache.shutdown()
        self.executor.shutdown()

    # ── Internals ───────────────────────────────────────

    def _lookup(self, key: Fingerprint, user_id: str, intent: ResolvedIntent) -> tuple[AggregateResult, bool]:
        """Serve *intent* through the cache, falling back to direct execution.

        A cache backend failure before the computation starts triggers one
        direct execution.  A failure after the computation finished returns
        the computed value.  Store failures (and a coalesced leader's
        failure) propagate unchanged.
        """
        if self.cache is None:
            return self.executor.execute(user_id, intent), False

        computed: list[AggregateResult] = []
        started = False

        def compute() -> AggregateResult:
            nonlocal started
            started = True
            computed.append(self.executor.execute(user_id, intent))
            return computed[0]

        try:
            return self.cache.get_or_compute(key, compute)
        except Exception as exc:
            if computed:
                logger.warning("Cache failed after compute key=%s: %s", key, exc)
                return computed[0], False
            domain_failure = isinstance(exc, SpendQueryError) and not isinstance(exc, CacheUnavailable)
            if started or domain_failure:
                raise
            logger.warning("Cache unavailable, executing directly key=%s: %s", key, exc)
            return self.executor.execute(user_id, intent), False

    @staticmethod
    def _failure(
        message: str,
        exc: SpendQueryError,
        t0: float,
        intent: ResolvedIntent | None = None,
    ) -> QueryAnswer:
        return QueryAnswer(
            message=message,
            data={"error": exc.code},
            error=exc.code,
            latency_ms=int((time.perf_counter() - t0) * 1000),
            intent=intent,
        )


# ── Factory ──────────────────────────────────────────────


def build_orchestrator(
    store: ReceiptStore | None = None,
    settings: Settings | None = None,
    start_sweep: bool = True,
) -> QueryOrchestrator:
    """Wire classifier, executor and cache from *settings*.

    Without a *store* the SQL store over the shared engine is used.
    """
    settings = settings or get_settings()
    if store is None:
        from src.db.connection import get_engine
        from src.db.receipt_store import SqlReceiptStore

        store = SqlReceiptStore(get_engine(), statement_timeout_ms=int(settings.store_timeout_seconds * 1000))

    vocabulary = load_vocabulary()
    classifier = IntentClassifier(
        vocabulary=vocabulary,
        mode=settings.classifier_mode,
        default_top_n=settings.default_top_n,
        max_top_n=settings.max_top_n,
    )
    executor = AggregationExecutor(
        store,
        vocabulary=vocabulary,
        timeout_seconds=settings.store_timeout_seconds,
        default_top_n=settings.default_top_n,
        anomaly_multiplier=settings.anomaly_multiplier,
        anomaly_history_months=settings.anomaly_history_months,
        anomaly_scan_limit=settings.anomaly_scan_limit,
        flag_new_vendors=settings.anomaly_flag_new_vendors,
    )
    cache = ResultCache(
        ttl=settings.cache_ttl_seconds,
        max_bytes=settings.cache_max_bytes,
        max_entries=settings.cache_max_entries,
        sweep_interval=settings.cache_sweep_interval_seconds,
        sweep_batch_size=settings.cache_sweep_batch_size,
    )
    if start_sweep:
        cache.start()
    logger.info("Orchestrator ready classifier=%s ttl=%.0fs", settings.classifier_mode, settings.cache_ttl_seconds)
    return QueryOrchestrator(classifier, executor, cache)
