"""
Exception hierarchy for nano-mcp.

Provides typed exceptions for RPC transport, proof-of-work and block
operations so callers can tell retryable failures from terminal ones.
"""

from __future__ import annotations
from typing import Optional, Any, Dict


class NanoError(Exception):
    """Base exception for all nano-mcp errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the operation can be retried
    """

    recoverable = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if recoverable is not None:
            self.recoverable = recoverable


# ==================== Configuration & Validation ====================


class ConfigurationError(NanoError):
    """Raised when configuration is missing or invalid."""
    pass


class ValidationError(NanoError):
    """Raised when caller input fails validation (address, key, amount)."""
    pass


# ==================== RPC Transport ====================


class RPCError(NanoError):
    """Raised when an RPC call to a Nano node fails."""
    recoverable = True


class RPCTimeoutError(RPCError):
    """Raised when a node does not answer within the configured timeout."""
    pass


class RateLimitError(RPCError):
    """Raised when a node answers 429."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class NodeUnavailableError(RPCError):
    """Raised when a node cannot be reached or returns a server error."""
    pass


class RPCResponseError(RPCError):
    """Raised when a node answers with a JSON body carrying an ``error`` field."""

    recoverable = False

    def __init__(
        self,
        message: str,
        action: Optional[str] = None,
        node_error: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.action = action
        self.node_error = node_error or message


# ==================== Proof of Work ====================


class WorkGenerationError(NanoError):
    """Raised when proof-of-work could not be obtained."""
    recoverable = True


class WorkTimeoutError(WorkGenerationError):
    """Raised when work generation exceeds its time budget."""

    def __init__(
        self,
        message: str,
        elapsed_ms: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.elapsed_ms = elapsed_ms


# ==================== Blocks ====================


class SigningError(NanoError):
    """Raised when a block cannot be built or signed."""
    pass


class BlockRejectedError(NanoError):
    """Raised when the network rejects a submitted block."""

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason or message


# ==================== Utility Functions ====================


def is_recoverable_error(exc: Exception) -> bool:
    """Check if an exception represents a recoverable error.

    Args:
        exc: The exception to check

    Returns:
        True if the error is recoverable and the operation can be retried
    """
    if isinstance(exc, NanoError):
        return exc.recoverable

    recoverable_types = (
        ConnectionError,
        TimeoutError,
        OSError,
    )
    return isinstance(exc, recoverable_types)


def get_error_context(exc: Exception) -> Dict[str, Any]:
    """Extract error context from an exception for logging.

    Args:
        exc: The exception to extract context from

    Returns:
        Dictionary containing error type, message, and any additional details
    """
    context: Dict[str, Any] = {
        "error_type": type(exc).__name__,
        "error_message": str(exc),
    }

    if isinstance(exc, NanoError):
        context["recoverable"] = exc.recoverable
        if exc.details:
            context["details"] = exc.details

    if isinstance(exc, RPCResponseError) and exc.action:
        context["action"] = exc.action

    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        context["retry_after"] = exc.retry_after

    if isinstance(exc, WorkTimeoutError) and exc.elapsed_ms is not None:
        context["elapsed_ms"] = exc.elapsed_ms

    if isinstance(exc, BlockRejectedError):
        context["reason"] = exc.reason

    return context
