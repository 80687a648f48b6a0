"""
HTTP transport for Nano node RPC.

Handles all communication with Nano nodes: one POST per action, node
failover on rate limiting, server errors and connection failure, bounded
retries with backoff, and error mapping to the nano-mcp exception hierarchy.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
from requests.adapters import HTTPAdapter

from nano_mcp.core.exceptions import (
    NodeUnavailableError,
    RPCError,
    RPCResponseError,
    RPCTimeoutError,
    RateLimitError,
)
from nano_mcp.core.metrics import NanoMetrics, default_metrics

logger = logging.getLogger(__name__)


@dataclass
class TransportState:
    """Failover position owned by one transport instance, shared by request threads."""

    nodes: List[str]
    current_index: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def current_node(self) -> str:
        with self._lock:
            return self.nodes[self.current_index]

    def advance(self, failed_node: Optional[str] = None) -> str:
        """
        Move to the next node and return it.

        When ``failed_node`` is given, only advance if it is still the
        current node, so concurrent failures on one node move past it once.
        """
        with self._lock:
            if failed_node is None or self.nodes[self.current_index] == failed_node:
                self.current_index = (self.current_index + 1) % len(self.nodes)
            return self.nodes[self.current_index]


class NodeTransport:
    """
    RPC client for one or more Nano nodes.

    Features:
    - Failover to the next node on 429, 5xx, timeouts and connection failures
    - Bounded total attempts per logical call
    - Optional RPC key sent with every request
    - Per-attempt timeouts and an optional budget for the whole call
    """

    def __init__(
        self,
        nodes: Sequence[str],
        rpc_key: Optional[str] = None,
        timeout: float = 30.0,
        max_attempts: Optional[int] = None,
        backoff_factor: float = 0.5,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        metrics: Optional[NanoMetrics] = None,
        pool_maxsize: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the transport.

        Args:
            nodes: Candidate node URLs, tried in order
            rpc_key: Key for authenticated nodes, None for public nodes
            timeout: Default request timeout in seconds
            max_attempts: Total attempts per call, defaults to twice the node count
            backoff_factor: Base delay for linear backoff between attempts
            session: HTTP session, created when omitted
            sleep: Delay function
            metrics: Metric collectors
            pool_maxsize: Connection pool size per node
            clock: Monotonic time source for call budgets
        """
        if not nodes:
            raise ValueError("At least one node URL is required")

        self.state = TransportState(nodes=list(nodes))
        self.rpc_key = rpc_key
        self.timeout = timeout
        self.max_attempts = max_attempts or 2 * len(self.state.nodes)
        self.backoff_factor = backoff_factor
        self.sleep = sleep
        self.clock = clock
        self.metrics = metrics or default_metrics()

        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=len(self.state.nodes), pool_maxsize=pool_maxsize)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    @classmethod
    def from_config(cls, config, **kwargs: Any) -> "NodeTransport":
        return cls(
            nodes=config.rpc_nodes,
            rpc_key=config.rpc_key,
            timeout=config.rpc_timeout,
            max_attempts=config.max_attempts,
            backoff_factor=config.rpc_backoff,
            **kwargs,
        )

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": "nano-mcp/0.1",
        }

    def _handle_response(self, action: str, response: requests.Response) -> Dict[str, Any]:
        """
        Map an HTTP response to data or an exception.

        Raises:
            RateLimitError: On 429
            NodeUnavailableError: On 5xx
            RPCError: On any other non-2xx status
            RPCResponseError: When the body carries an ``error`` field
        """
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                f"Rate limited by node on {action}",
                retry_after=int(retry_after) if retry_after and retry_after.isascii() and retry_after.isdigit() else None,
            )
        if response.status_code >= 500:
            raise NodeUnavailableError(
                f"Node error {response.status_code} on {action}",
                details={"status": response.status_code},
            )
        if not 200 <= response.status_code < 300:
            raise RPCError(
                f"Unexpected status {response.status_code} on {action}",
                details={"status": response.status_code},
                recoverable=False,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise RPCError(f"Invalid JSON from node on {action}", recoverable=False) from exc

        if isinstance(data, dict) and data.get("error"):
            raise RPCResponseError(
                f"Node rejected {action}: {data['error']}",
                action=action,
                node_error=str(data["error"]),
            )
        return data

    def call(
        self,
        action: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        total_timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Perform one RPC action with failover.

        Args:
            action: Node RPC action name
            params: Action parameters
            timeout: Per-attempt timeout overriding the default
            total_timeout: Budget in seconds for all attempts together,
                including backoff; no further attempt starts once it is spent

        Returns:
            Parsed response body

        Raises:
            RPCResponseError: The node answered with an error (not retried)
            RPCTimeoutError: The last attempt timed out or ``total_timeout`` ran out
            RPCError: Attempts exhausted
        """
        body: Dict[str, Any] = {"action": action}
        body.update(params or {})
        if self.rpc_key:
            body["key"] = self.rpc_key
        timeout = timeout or self.timeout
        deadline = self.clock() + total_timeout if total_timeout else None

        last_error: Optional[RPCError] = None
        budget_spent = False
        attempts = 0
        while attempts < self.max_attempts:
            attempt_timeout = timeout
            if deadline is not None:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    budget_spent = True
                    break
                attempt_timeout = min(timeout, remaining)

            attempts += 1
            node = self.state.current_node
            started = time.monotonic()
            try:
                response = self.session.post(
                    node, json=body, headers=self._get_headers(), timeout=attempt_timeout
                )
                logger.debug(
                    "POST %s action=%s status=%s", node, action, response.status_code
                )
                data = self._handle_response(action, response)
                self.metrics.rpc_latency.labels(action=action).observe(time.monotonic() - started)
                return data
            except RPCResponseError:
                self.metrics.rpc_failures.labels(action=action, reason="node_error").inc()
                raise
            except RateLimitError as e:
                last_error = e
                reason = "rate_limited"
            except NodeUnavailableError as e:
                last_error = e
                reason = "server_error"
            except requests.Timeout as e:
                last_error = RPCTimeoutError(
                    f"Request timeout after {attempt_timeout}s on {action}",
                    details={"node": node, "timeout": attempt_timeout},
                )
                last_error.__cause__ = e
                reason = "timeout"
            except requests.ConnectionError as e:
                last_error = NodeUnavailableError(
                    f"Connection error on {action}: {e}",
                    details={"node": node},
                )
                reason = "connection"
            except requests.RequestException as e:
                self.metrics.rpc_failures.labels(action=action, reason="request").inc()
                raise RPCError(f"Request error on {action}: {e}", recoverable=False) from e

            self.metrics.rpc_failures.labels(action=action, reason=reason).inc()
            next_node = self.state.advance(node)
            logger.warning(
                "RPC %s failed on %s (%s), attempt %d/%d, failing over to %s",
                action,
                node,
                reason,
                attempts,
                self.max_attempts,
                next_node,
                extra={"event": "rpc.failover", "action": action, "reason": reason},
            )
            if attempts < self.max_attempts:
                delay = self.backoff_factor * attempts
                if isinstance(last_error, RateLimitError) and last_error.retry_after:
                    delay = max(delay, float(last_error.retry_after))
                if deadline is not None:
                    delay = min(delay, max(deadline - self.clock(), 0.0))
                if delay > 0:
                    self.sleep(delay)

        logger.error(
            "RPC %s failed after %d attempts",
            action,
            attempts,
            extra={"event": "rpc.exhausted", "action": action},
        )
        if isinstance(last_error, RPCTimeoutError):
            raise last_error
        if budget_spent:
            raise RPCTimeoutError(
                f"RPC {action} exceeded its {total_timeout}s budget after {attempts} attempts",
                details={"attempts": attempts, "budget": total_timeout},
            ) from last_error
        raise RPCError(
            f"RPC {action} failed after {attempts} attempts: {last_error}",
            details={"attempts": attempts, "nodes": list(self.state.nodes)},
        ) from last_error

    def close(self) -> None:
        self.session.close()
