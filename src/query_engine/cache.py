"""
Result cache -- memoises aggregation results per (user, resolved intent).

Keys are fingerprints of the *resolved* intent, never of the raw text, so
"spent at Chick-fil-A" and "chick fil a spending" share one entry.

  - TTL expiry: checked lazily on access and by a periodic sweep thread
    that works in bounded batches.
  - Memory bound: when the estimated size exceeds ``max_bytes`` (or the
    entry count exceeds ``max_entries``) least-recently-used entries go
    first, then any remaining expired ones.
  - ``invalidate_user`` drops every entry for a user; the ingestion side
    calls it after persisting a receipt.
  - Concurrent misses on one fingerprint are coalesced: the first caller
    computes, late arrivals wait on the same future.  Failures are handed
    to the waiters and never stored.

Process-local (one lock around an OrderedDict).  For multi-process
deployments put the same interface in front of Redis / Memcached.
"""
from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable

from src.core.logging import get_logger
from src.core.utils import estimate_size
from src.query_engine.models import ResolvedIntent

logger = get_logger(__name__)


# ── Configuration ───────────────────────────────────────

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_BYTES = 50 * 1024 * 1024
DEFAULT_MAX_ENTRIES = 1000
DEFAULT_SWEEP_INTERVAL_SECONDS = 30.0
DEFAULT_SWEEP_BATCH_SIZE = 100


# ── Fingerprints ────────────────────────────────────────


@dataclass(frozen=True)
class Fingerprint:
    """Cache key: the owning user plus a digest of the resolved intent."""
    user_id: str
    digest: str

    def __str__(self) -> str:
        return f"{self.user_id}:{self.digest[:16]}"


def fingerprint(user_id: str, intent: ResolvedIntent) -> Fingerprint:
    """Deterministic key for *intent* asked by *user_id*.

    Canonical JSON of the resolved slots (sorted keys, ISO datetimes).  The
    ``fallback`` marker is excluded: it records how the intent was reached,
    not what it asks for.
    """
    payload = intent.model_dump(mode="json", exclude={"fallback"})
    raw = json.dumps({"user_id": user_id, "intent": payload}, sort_keys=True, separators=(",", ":"))
    return Fingerprint(user_id=user_id, digest=hashlib.sha256(raw.encode()).hexdigest())


# ── Cache entry ─────────────────────────────────────────


@dataclass
class CacheEntry:
    """A single cached result."""
    key: Fingerprint
    value: Any
    created_at: float
    last_accessed_at: float
    ttl: float
    size_bytes: int
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return (now - self.created_at) > self.ttl


# ── Cache implementation ────────────────────────────────


class ResultCache:
    """Thread-safe TTL + LRU cache with in-flight coalescing.

    Parameters
    ----------
    ttl : float
        Default time-to-live in seconds.
    max_bytes : int
        Budget for the summed ``size_bytes`` of all entries.
    max_entries : int
        Upper bound on the entry count.
    sweep_interval : float
        Seconds between background expiry sweeps (after ``start()``).
    sweep_batch_size : int
        Most entries examined per lock acquisition during a sweep.
    clock : callable
        Monotonic seconds; injectable for tests.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        max_bytes: int = DEFAULT_MAX_BYTES,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        sweep_batch_size: int = DEFAULT_SWEEP_BATCH_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl
        self._max_bytes = max_bytes
        self._max_entries = max_entries
        self._sweep_interval = sweep_interval
        self._sweep_batch_size = max(1, sweep_batch_size)
        self._clock = clock

        self._lock = threading.Lock()
        self._entries: OrderedDict[Fingerprint, CacheEntry] = OrderedDict()
        self._by_user: dict[str, set[Fingerprint]] = {}
        self._inflight: dict[Fingerprint, Future] = {}
        # in-flight keys invalidated before their compute finished
        self._stale: set[Fingerprint] = set()
        self._bytes = 0

        self._hits = 0
        self._misses = 0
        self._coalesced = 0
        self._evictions = 0
        self._expirations = 0

        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    # ── Public API ──────────────────────────────────────

    def get(self, key: Fingerprint) -> Any | None:
        """Return the cached value, or ``None`` on miss / expiry."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._misses += 1
                logger.debug("Cache MISS key=%s", key)
                return None
            self._hits += 1
            logger.debug("Cache HIT key=%s accesses=%d", key, entry.access_count)
            return entry.value

    def set(self, key: Fingerprint, value: Any, ttl: float | None = None) -> None:
        """Store *value* under *key*, evicting as needed to stay within budget."""
        with self._lock:
            self._put(key, value, ttl)

    def get_or_compute(
        self,
        key: Fingerprint,
        compute: Callable[[], Any],
        ttl: float | None = None,
    ) -> tuple[Any, bool]:
        """Return ``(value, from_cache)``, computing at most once per key.

        The first caller to miss runs *compute*; concurrent callers for the
        same key wait for that result and count as hits (``coalesced``).  If
        *compute* raises, every waiter receives the same exception and
        nothing is stored.  A result whose user was invalidated (or the cache
        cleared) while it was being computed is returned but not stored.
        """
        with self._lock:
            entry = self._live_entry(key)
            if entry is not None:
                self._hits += 1
                logger.debug("Cache HIT key=%s accesses=%d", key, entry.access_count)
                return entry.value, True

            pending = self._inflight.get(key)
            leader = pending is None
            if not leader:
                self._hits += 1
                self._coalesced += 1
                logger.debug("Cache COALESCE key=%s", key)
            else:
                self._misses += 1
                pending = Future()
                self._inflight[key] = pending
                logger.debug("Cache MISS key=%s", key)

        if not leader:
            return pending.result(), True

        try:
            value = compute()
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
                self._stale.discard(key)
            pending.set_exception(exc)
            raise

        try:
            with self._lock:
                self._inflight.pop(key, None)
                if key in self._stale:
                    self._stale.discard(key)
                    logger.debug("Cache DISCARD key=%s (invalidated during compute)", key)
                else:
                    self._put(key, value, ttl)
        finally:
            pending.set_result(value)
        return value, False

    def invalidate_user(self, user_id: str) -> int:
        """Drop every entry derived from *user_id*. Returns number removed."""
        with self._lock:
            self._stale.update(k for k in self._inflight if k.user_id == user_id)
            keys = list(self._by_user.get(user_id, ()))
            for key in keys:
                self._remove(key)
        logger.info("Cache invalidated user=%s removed=%d", user_id, len(keys))
        return len(keys)

    def clear(self) -> int:
        """Drop all entries and reset statistics. Returns number removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._by_user.clear()
            self._bytes = 0
            self._stale.update(self._inflight)
            self._hits = self._misses = self._coalesced = 0
            self._evictions = self._expirations = 0
        logger.info("Cache cleared removed=%d", count)
        return count

    def cleanup_expired(self, limit: int | None = None) -> int:
        """Remove up to *limit* expired entries (all if ``None``). Returns count removed."""
        with self._lock:
            return self._purge_expired(limit)

    def stats(self) -> dict[str, Any]:
        """Return cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "hit_count": self._hits,
                "miss_count": self._misses,
                "hit_rate": round(self._hits / total, 3) if total else 0.0,
                "coalesced": self._coalesced,
                "evictions": self._evictions,
                "expirations": self._expirations,
                "in_flight": len(self._inflight),
                "bytes": self._bytes,
                "max_bytes": self._max_bytes,
                "max_entries": self._max_entries,
                "ttl_seconds": self._ttl,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            entry = self._entries.get(key)  # type: ignore[arg-type]
            return entry is not None and not entry.is_expired(self._clock())

    # ── Background sweep ────────────────────────────────

    def start(self) -> None:
        """Start the periodic expiry sweep (idempotent)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="result-cache-sweep", daemon=True)
        self._sweeper.start()
        logger.info("Cache sweep started interval=%.1fs batch=%d", self._sweep_interval, self._sweep_batch_size)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the sweep thread and wait for it to exit."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None
            logger.info("Cache sweep stopped")

    def __enter__(self) -> "ResultCache":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    def sweep(self) -> int:
        """One full expiry pass, releasing the lock between batches."""
        removed = 0
        while True:
            n = self.cleanup_expired(self._sweep_batch_size)
            removed += n
            if n < self._sweep_batch_size:
                return removed

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self._sweep_interval):
            removed = self.sweep()
            if removed:
                logger.info("Cache sweep removed=%d expired entries", removed)

    # ── Internals (caller holds the lock) ───────────────

    def _live_entry(self, key: Fingerprint) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if entry.is_expired(now):
            self._remove(key)
            self._expirations += 1
            return None
        entry.access_count += 1
        entry.last_accessed_at = now
        self._entries.move_to_end(key)
        return entry

    def _put(self, key: Fingerprint, value: Any, ttl: float | None) -> None:
        size = estimate_size(value)
        if size > self._max_bytes:
            logger.warning("Cache SKIP key=%s size=%d exceeds budget %d", key, size, self._max_bytes)
            return
        if key in self._entries:
            self._remove(key)
        now = self._clock()
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            last_accessed_at=now,
            ttl=self._ttl if ttl is None else ttl,
            size_bytes=size,
        )
        self._by_user.setdefault(key.user_id, set()).add(key)
        self._bytes += size
        logger.debug("Cache PUT key=%s size=%d total_bytes=%d", key, size, self._bytes)
        self._enforce_budget()

    def _enforce_budget(self) -> None:
        if self._bytes <= self._max_bytes and len(self._entries) <= self._max_entries:
            return
        evicted = 0
        while self._entries and (self._bytes > self._max_bytes or len(self._entries) > self._max_entries):
            key, _ = next(iter(self._entries.items()))
            self._remove(key)
            evicted += 1
        self._evictions += evicted
        expired = self._purge_expired(self._sweep_batch_size)
        logger.debug("Cache EVICT lru=%d expired=%d total_bytes=%d", evicted, expired, self._bytes)

    def _purge_expired(self, limit: int | None) -> int:
        now = self._clock()
        expired: list[Fingerprint] = []
        for key, entry in self._entries.items():
            if limit is not None and len(expired) >= limit:
                break
            if entry.is_expired(now):
                expired.append(key)
        for key in expired:
            self._remove(key)
        self._expirations += len(expired)
        return len(expired)

    def _remove(self, key: Fingerprint) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        self._bytes -= entry.size_bytes
        keys = self._by_user.get(key.user_id)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._by_user[key.user_id]
