"""
Proof-of-work cache.

Precomputes and caches work so that sends and receives do not pay the
multi-second generation cost on the critical path:
- Precompute work as soon as a frontier is known
- Hand each cached value to at most one consumer until it is invalidated
- Expire stale entries lazily and from an optional background sweeper
- Evict the oldest entry when the cache is full
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from nano_mcp.core.constants import RECEIVE_WORK_THRESHOLD, SEND_WORK_THRESHOLD
from nano_mcp.core.exceptions import (
    NanoError,
    RPCTimeoutError,
    WorkGenerationError,
    WorkTimeoutError,
)
from nano_mcp.core.metrics import NanoMetrics, default_metrics

logger = logging.getLogger(__name__)

RPCCall = Callable[..., Dict[str, Any]]


class BlockKind(str, Enum):
    """Work class of a block: send/change, or receive/open."""

    SEND = "send"
    RECEIVE = "receive"

    @property
    def difficulty(self) -> str:
        if self is BlockKind.SEND:
            return SEND_WORK_THRESHOLD
        return RECEIVE_WORK_THRESHOLD


CacheKey = Tuple[str, BlockKind]


@dataclass
class WorkCacheEntry:
    work: str
    created_at: float
    expires_at: float


class WorkCache:
    """
    Expiring, size-bounded cache of proof-of-work keyed by (hash, block kind).

    ``consume`` is the only way to obtain work that will be submitted: it marks
    the key in use so that a concurrent consumer of the same frontier sees a
    miss until the key is invalidated (block accepted) or released (block not
    submitted).
    """

    def __init__(
        self,
        rpc_call: RPCCall,
        ttl: float = 600.0,
        max_size: int = 1000,
        send_timeout: float = 30.0,
        receive_timeout: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[NanoMetrics] = None,
    ) -> None:
        """
        Args:
            rpc_call: Callable performing an RPC action,
                ``rpc_call(action, params, timeout=..., total_timeout=...)``
            ttl: Seconds a cached value stays valid
            max_size: Maximum number of cached values
            send_timeout: Generation time budget for send-class work
            receive_timeout: Generation time budget for receive-class work
            clock: Monotonic time source
            metrics: Metric collectors
        """
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_size < 1:
            raise ValueError("max_size must be at least 1")

        self.rpc_call = rpc_call
        self.ttl = ttl
        self.max_size = max_size
        self.timeouts = {BlockKind.SEND: send_timeout, BlockKind.RECEIVE: receive_timeout}
        self.clock = clock
        self.metrics = metrics or default_metrics()

        self._entries: Dict[CacheKey, WorkCacheEntry] = {}
        self._in_use: Dict[CacheKey, float] = {}
        self._inflight: Dict[CacheKey, threading.Event] = {}
        self._lock = threading.RLock()

        self._stats = self._empty_stats()

        self._worker: Optional[threading.Thread] = None
        self._worker_stop = threading.Event()

        logger.info(
            "Work cache initialized",
            extra={"event": "work_cache.init", "ttl": ttl, "max_size": max_size},
        )

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {"hits": 0, "misses": 0, "precomputed": 0, "evictions": 0, "work_in_use": 0}

    @staticmethod
    def _key(block_hash: str, kind: BlockKind) -> CacheKey:
        return (block_hash.upper(), BlockKind(kind))

    def _is_expired(self, entry: WorkCacheEntry) -> bool:
        return self.clock() >= entry.expires_at

    def _record(self, outcome: str) -> None:
        if outcome == "hit":
            self._stats["hits"] += 1
        else:
            self._stats["misses"] += 1
            if outcome == "in_use":
                self._stats["work_in_use"] += 1
        self.metrics.work_cache_lookups.labels(outcome=outcome).inc()

    def _lookup(self, key: CacheKey) -> Optional[WorkCacheEntry]:
        """Return the live entry for ``key``, purging it if expired. Lock held."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry):
            del self._entries[key]
            self.metrics.work_cache_size.set(len(self._entries))
            return None
        return entry

    def _evict_oldest(self) -> None:
        if len(self._entries) < self.max_size:
            return
        oldest_key = min(self._entries, key=lambda k: self._entries[k].created_at)
        del self._entries[oldest_key]
        self._stats["evictions"] += 1
        self.metrics.work_cache_evictions.inc()
        logger.debug(
            "Evicted oldest work cache entry %s",
            oldest_key[0],
            extra={"event": "work_cache.evicted", "kind": oldest_key[1].value},
        )

    # ==================== Generation ====================

    def generate(self, block_hash: str, kind: BlockKind) -> str:
        """
        Generate work synchronously, bypassing the cache.

        Raises:
            WorkTimeoutError: If generation exceeds the time budget for ``kind``
            WorkGenerationError: If the node fails or returns no work
        """
        kind = BlockKind(kind)
        timeout = self.timeouts[kind]
        started = time.monotonic()
        try:
            result = self.rpc_call(
                "work_generate",
                {"hash": block_hash, "difficulty": kind.difficulty},
                timeout=timeout,
                total_timeout=timeout,
            )
        except RPCTimeoutError as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            raise WorkTimeoutError(
                f"Work generation timed out after {elapsed_ms}ms",
                elapsed_ms=elapsed_ms,
                details={"hash": block_hash, "kind": kind.value, "timeout": timeout},
            ) from exc
        except NanoError as exc:
            raise WorkGenerationError(
                f"Work generation failed: {exc}",
                details={"hash": block_hash, "kind": kind.value},
            ) from exc

        work = result.get("work") if isinstance(result, dict) else None
        if not work:
            raise WorkGenerationError(
                "Node returned no work",
                details={"hash": block_hash, "kind": kind.value},
            )
        return work

    def precompute(self, block_hash: str, kind: BlockKind, force: bool = False) -> Optional[str]:
        """
        Precompute work for ``block_hash`` and cache it.

        Returns the cached value unchanged when a live entry exists and
        ``force`` is false. A forced call that finds a generation in flight
        waits for it, then generates a fresh value of its own. Failures are
        logged and reported as None.
        """
        key = self._key(block_hash, kind)
        while True:
            with self._lock:
                if not force:
                    entry = self._lookup(key)
                    if entry is not None:
                        return entry.work
                pending = self._inflight.get(key)
                if pending is None:
                    done = threading.Event()
                    self._inflight[key] = done
                    break
            # Another thread is generating this key
            pending.wait(timeout=self.timeouts[key[1]])

        try:
            work = self.generate(key[0], key[1])
        except NanoError as exc:
            logger.warning(
                "Failed to precompute work for %s: %s",
                key[0],
                exc,
                extra={"event": "work_cache.precompute_failed", "kind": key[1].value},
            )
            return None
        finally:
            with self._lock:
                self._inflight.pop(key, None)
            done.set()

        now = self.clock()
        with self._lock:
            if key not in self._entries:
                self._evict_oldest()
            self._entries[key] = WorkCacheEntry(work=work, created_at=now, expires_at=now + self.ttl)
            self._stats["precomputed"] += 1
            self.metrics.work_precomputed.labels(kind=key[1].value).inc()
            self.metrics.work_cache_size.set(len(self._entries))

        logger.info(
            "Work precomputed for %s",
            key[0],
            extra={"event": "work_cache.precomputed", "kind": key[1].value},
        )
        return work

    def precompute_for_account(self, frontier: Optional[str]) -> Optional[str]:
        """Precompute send work for an opened account's frontier."""
        if not frontier or frontier.strip("0") == "":
            return None
        return self.precompute(frontier, BlockKind.SEND)

    def precompute_batch(
        self, items: Iterable[Tuple[str, BlockKind]], max_workers: int = 4
    ) -> List[Optional[str]]:
        """Precompute several keys in parallel, preserving input order."""
        items = list(items)
        if not items:
            return []
        with ThreadPoolExecutor(max_workers=min(max_workers, len(items))) as executor:
            return list(executor.map(lambda item: self.precompute(item[0], item[1]), items))

    # ==================== Lookup ====================

    def peek(self, block_hash: str, kind: BlockKind) -> Optional[str]:
        """Return cached work without claiming it. For inspection only."""
        key = self._key(block_hash, kind)
        with self._lock:
            entry = self._lookup(key)
            if entry is None:
                self._record("miss")
                return None
            self._record("hit")
            return entry.work

    def consume(self, block_hash: str, kind: BlockKind) -> Optional[str]:
        """
        Claim cached work for submission.

        Returns None when the key is already claimed, absent or expired.
        """
        key = self._key(block_hash, kind)
        with self._lock:
            if key in self._in_use:
                self._record("in_use")
                logger.info(
                    "Work for %s already in use, refusing reuse",
                    key[0],
                    extra={"event": "work_cache.in_use", "kind": key[1].value},
                )
                return None

            entry = self._lookup(key)
            if entry is None:
                self._record("miss")
                return None

            self._in_use[key] = self.clock()
            self._record("hit")
            return entry.work

    def obtain(self, block_hash: str, kind: BlockKind) -> Tuple[str, bool]:
        """
        Claim cached work or generate it on demand.

        Returns:
            Tuple of (work, from_cache)
        """
        work = self.consume(block_hash, kind)
        if work is not None:
            return work, True
        return self.generate(block_hash, kind), False

    def is_in_use(self, block_hash: str, kind: BlockKind) -> bool:
        with self._lock:
            return self._key(block_hash, kind) in self._in_use

    # ==================== Invalidation ====================

    def invalidate(self, block_hash: str, kind: BlockKind) -> None:
        """Drop the entry and its in-use marker once a block built on it is accepted."""
        key = self._key(block_hash, kind)
        with self._lock:
            removed_entry = self._entries.pop(key, None) is not None
            removed_marker = self._in_use.pop(key, None) is not None
            self.metrics.work_cache_size.set(len(self._entries))
        if removed_entry or removed_marker:
            logger.debug(
                "Invalidated work for %s",
                key[0],
                extra={"event": "work_cache.invalidated", "kind": key[1].value},
            )

    def release(self, block_hash: str, kind: BlockKind) -> None:
        """Return a claimed entry unused, e.g. when signing failed before submission."""
        key = self._key(block_hash, kind)
        with self._lock:
            self._in_use.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            size, markers = len(self._entries), len(self._in_use)
            self._entries.clear()
            self._in_use.clear()
            self.metrics.work_cache_size.set(0)
        logger.info(
            "Work cache cleared",
            extra={"event": "work_cache.cleared", "entries": size, "markers": markers},
        )

    def sweep(self) -> int:
        """Remove expired entries and orphaned in-use markers. Returns entries removed."""
        now = self.clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
            stale_markers = [
                key
                for key, marked_at in self._in_use.items()
                if key not in self._entries and now - marked_at >= self.ttl
            ]
            for key in stale_markers:
                del self._in_use[key]
            self.metrics.work_cache_size.set(len(self._entries))
        if expired:
            logger.info(
                "Removed %d expired work cache entries",
                len(expired),
                extra={"event": "work_cache.swept", "remaining": len(self._entries)},
            )
        return len(expired)

    # ==================== Statistics ====================

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._stats["hits"] + self._stats["misses"]
            return {
                "hits": self._stats["hits"],
                "misses": self._stats["misses"],
                "hit_rate": self._stats["hits"] / total if total else 0.0,
                "size": len(self._entries),
                "max_size": self.max_size,
                "ttl_seconds": self.ttl,
                "precomputed": self._stats["precomputed"],
                "evictions": self._stats["evictions"],
                "work_in_use": self._stats["work_in_use"],
                "in_use_count": len(self._in_use),
                "background_worker": self.is_background_worker_running(),
            }

    def reset_stats(self) -> None:
        with self._lock:
            self._stats = self._empty_stats()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ==================== Background sweeper ====================

    def start_background_worker(self, interval: float = 300.0) -> None:
        """Start a daemon thread that sweeps expired entries every ``interval`` seconds."""
        if self._worker is not None and self._worker.is_alive():
            logger.warning("Work cache background worker already running")
            return
        self._worker_stop.clear()
        self._worker = threading.Thread(
            target=self._sweep_loop,
            args=(interval,),
            name="WorkCache-Sweeper",
            daemon=True,
        )
        self._worker.start()
        logger.info(
            "Work cache background worker started",
            extra={"event": "work_cache.worker_started", "interval": interval},
        )

    def stop_background_worker(self, timeout: float = 5.0) -> None:
        if self._worker is None:
            return
        self._worker_stop.set()
        self._worker.join(timeout=timeout)
        self._worker = None
        logger.info("Work cache background worker stopped", extra={"event": "work_cache.worker_stopped"})

    def is_background_worker_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def _sweep_loop(self, interval: float) -> None:
        while not self._worker_stop.wait(timeout=interval):
            try:
                self.sweep()
            except (RuntimeError, KeyError, ValueError) as e:
                logger.error(
                    f"Error during work cache sweep: {type(e).__name__}",
                    extra={"event": "work_cache.sweep_error", "error": str(e)},
                )
