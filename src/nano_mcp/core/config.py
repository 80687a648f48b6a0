"""
nano-mcp configuration

Configuration is an explicit object built once at startup with
``NanoConfig.from_env()`` and handed to the transport, the transaction
service and the MCP server. Core logic never reads the environment itself.

SECURITY NOTICE:
- RPC keys MUST be provided via environment variables
- Never commit keys to version control
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Tuple
from urllib.parse import urlparse

from nano_mcp.core.constants import DEFAULT_REPRESENTATIVE, DEFAULT_RPC_NODES
from nano_mcp.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _parse_nodes(raw: str) -> Tuple[str, ...]:
    return tuple(node.strip() for node in raw.split(",") if node.strip())


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class NanoConfig:
    """Runtime settings for one nano-mcp instance."""

    rpc_nodes: Tuple[str, ...] = DEFAULT_RPC_NODES
    rpc_key: Optional[str] = None
    default_representative: str = DEFAULT_REPRESENTATIVE
    rpc_timeout: float = 30.0
    rpc_max_attempts: Optional[int] = None
    rpc_backoff: float = 0.5
    send_work_timeout: float = 30.0
    receive_work_timeout: float = 15.0
    work_cache_ttl: float = 600.0
    work_cache_max_size: int = 1000
    pending_count: int = 100
    frontier_retries: int = 5
    frontier_retry_delay: float = 1.0
    settle_delay: float = 1.0
    send_retries: int = 2
    auto_precompute: bool = False
    mcp_host: str = "0.0.0.0"
    mcp_port: int = 8080
    log_level: str = "INFO"
    log_file: Optional[str] = None
    environment: str = "production"

    def __post_init__(self) -> None:
        if not self.rpc_nodes:
            raise ConfigurationError("At least one RPC node URL is required")
        for node in self.rpc_nodes:
            parsed = urlparse(node)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ConfigurationError(f"Invalid RPC node URL: {node!r}")

        positive = {
            "rpc_timeout": self.rpc_timeout,
            "send_work_timeout": self.send_work_timeout,
            "receive_work_timeout": self.receive_work_timeout,
            "work_cache_ttl": self.work_cache_ttl,
            "work_cache_max_size": self.work_cache_max_size,
            "pending_count": self.pending_count,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")

        non_negative = {
            "rpc_backoff": self.rpc_backoff,
            "frontier_retries": self.frontier_retries,
            "frontier_retry_delay": self.frontier_retry_delay,
            "settle_delay": self.settle_delay,
            "send_retries": self.send_retries,
        }
        for name, value in non_negative.items():
            if value < 0:
                raise ConfigurationError(f"{name} cannot be negative, got {value}")

        if self.rpc_max_attempts is not None and self.rpc_max_attempts < 1:
            raise ConfigurationError("rpc_max_attempts must be at least 1")

    @property
    def max_attempts(self) -> int:
        """Total attempts per logical RPC call across all nodes."""
        if self.rpc_max_attempts is not None:
            return self.rpc_max_attempts
        return 2 * len(self.rpc_nodes)

    def with_overrides(self, **changes) -> "NanoConfig":
        return replace(self, **changes)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "NanoConfig":
        """Build configuration from ``NANO_*`` environment variables."""
        env = os.environ if env is None else env

        nodes = _parse_nodes(env.get("NANO_RPC_NODES", "")) or DEFAULT_RPC_NODES
        single = env.get("NANO_RPC_URL", "").strip()
        if single:
            nodes = (single,) + tuple(n for n in nodes if n != single)

        rpc_key = env.get("NANO_RPC_KEY", "").strip() or None
        if rpc_key is None:
            logger.info(
                "No NANO_RPC_KEY set, using public RPC nodes without a key",
                extra={"event": "config.public_nodes"},
            )

        max_attempts_raw = env.get("NANO_RPC_MAX_ATTEMPTS", "").strip()
        max_attempts = _get_int(env, "NANO_RPC_MAX_ATTEMPTS", 0) if max_attempts_raw else None

        return cls(
            rpc_nodes=nodes,
            rpc_key=rpc_key,
            default_representative=env.get("NANO_REPRESENTATIVE", "").strip() or DEFAULT_REPRESENTATIVE,
            rpc_timeout=_get_float(env, "NANO_RPC_TIMEOUT", 30.0),
            rpc_max_attempts=max_attempts,
            rpc_backoff=_get_float(env, "NANO_RPC_BACKOFF", 0.5),
            send_work_timeout=_get_float(env, "NANO_SEND_WORK_TIMEOUT", 30.0),
            receive_work_timeout=_get_float(env, "NANO_RECEIVE_WORK_TIMEOUT", 15.0),
            work_cache_ttl=_get_float(env, "NANO_WORK_CACHE_TTL", 600.0),
            work_cache_max_size=_get_int(env, "NANO_WORK_CACHE_MAX_SIZE", 1000),
            pending_count=_get_int(env, "NANO_PENDING_COUNT", 100),
            frontier_retries=_get_int(env, "NANO_FRONTIER_RETRIES", 5),
            frontier_retry_delay=_get_float(env, "NANO_FRONTIER_RETRY_DELAY", 1.0),
            settle_delay=_get_float(env, "NANO_SETTLE_DELAY", 1.0),
            send_retries=_get_int(env, "NANO_SEND_RETRIES", 2),
            auto_precompute=env.get("NANO_AUTO_PRECOMPUTE", "").strip().lower() in ("1", "true", "yes"),
            mcp_host=env.get("NANO_MCP_HOST", "").strip() or "0.0.0.0",
            mcp_port=_get_int(env, "NANO_MCP_PORT", 8080),
            log_level=env.get("NANO_LOG_LEVEL", "").strip().upper() or "INFO",
            log_file=env.get("NANO_LOG_FILE", "").strip() or None,
            environment=env.get("NANO_ENVIRONMENT", "").strip() or "production",
        )


__all__ = ["NanoConfig", "ConfigurationError"]
