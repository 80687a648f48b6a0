"""
nano-mcp - Prometheus metrics

Counters for the work cache and latency histograms for node RPC calls,
exported in the Prometheus text format by the HTTP façade.
"""

from __future__ import annotations

import threading
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class NanoMetrics:
    """Metric collectors bound to one registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.work_cache_lookups = Counter(
            "nano_work_cache_lookups_total",
            "Work cache lookups by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.work_cache_evictions = Counter(
            "nano_work_cache_evictions_total",
            "Work cache entries evicted at capacity",
            registry=self.registry,
        )
        self.work_precomputed = Counter(
            "nano_work_precomputed_total",
            "Proof-of-work values precomputed into the cache",
            ["kind"],
            registry=self.registry,
        )
        self.work_cache_size = Gauge(
            "nano_work_cache_size",
            "Entries currently held by the work cache",
            registry=self.registry,
        )
        self.rpc_latency = Histogram(
            "nano_rpc_call_seconds",
            "Latency of node RPC calls",
            ["action"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0, 60.0),
            registry=self.registry,
        )
        self.rpc_failures = Counter(
            "nano_rpc_failures_total",
            "Failed node RPC attempts",
            ["action", "reason"],
            registry=self.registry,
        )
        self.blocks_processed = Counter(
            "nano_blocks_processed_total",
            "Blocks submitted to the network by outcome",
            ["subtype", "outcome"],
            registry=self.registry,
        )

    def export(self) -> bytes:
        return generate_latest(self.registry)


_default_metrics: Optional[NanoMetrics] = None
_default_lock = threading.Lock()


def default_metrics() -> NanoMetrics:
    """Process-wide metrics used when no instance is injected."""
    global _default_metrics
    with _default_lock:
        if _default_metrics is None:
            _default_metrics = NanoMetrics()
        return _default_metrics
