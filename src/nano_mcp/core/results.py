"""
Structured operation results.

Orchestrators return these instead of raising on expected failures so that
agent callers can branch on ``kind`` rather than parse message strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from nano_mcp.core.exceptions import (
    BlockRejectedError,
    NanoError,
    RPCError,
    WorkGenerationError,
    WorkTimeoutError,
    get_error_context,
    is_recoverable_error,
)
from nano_mcp.core.units import format_balance, raw_to_xno


class FailureKind(str, Enum):
    INSUFFICIENT_BALANCE = "insufficient_balance"
    ACCOUNT_NOT_INITIALIZED = "account_not_initialized"
    INVALID_ADDRESS = "invalid_address"
    INVALID_AMOUNT = "invalid_amount"
    STALE_FRONTIER = "stale_frontier"
    INSUFFICIENT_WORK = "insufficient_work"
    WORK_TIMEOUT = "work_timeout"
    BLOCK_REJECTED = "block_rejected"
    RPC_FAILURE = "rpc_failure"

    @property
    def retryable(self) -> bool:
        return self in (
            FailureKind.STALE_FRONTIER,
            FailureKind.INSUFFICIENT_WORK,
            FailureKind.WORK_TIMEOUT,
            FailureKind.RPC_FAILURE,
        )


@dataclass
class OperationFailure:
    """A failed operation, discriminated by ``kind``."""

    kind: FailureKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    next_steps: List[str] = field(default_factory=list)
    retryable: Optional[bool] = None

    success = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "errorCode": self.kind.value.upper(),
            "retryable": self.kind.retryable if self.retryable is None else self.retryable,
            "details": self.details,
            "nextSteps": self.next_steps,
        }


def insufficient_balance(address: str, current_raw: int, requested_raw: int) -> OperationFailure:
    shortfall = requested_raw - current_raw
    return OperationFailure(
        kind=FailureKind.INSUFFICIENT_BALANCE,
        message="Insufficient balance",
        details={
            "address": address,
            "currentBalance": str(current_raw),
            "currentBalanceXno": raw_to_xno(current_raw),
            "requestedAmount": str(requested_raw),
            "requestedAmountXno": raw_to_xno(requested_raw),
            "shortfall": str(shortfall),
            "shortfallXno": raw_to_xno(shortfall),
        },
        next_steps=[
            f"Fund {address} with at least {raw_to_xno(shortfall)} XNO",
            "Call receiveAllPending after funding, then retry the send",
            "Or reduce the amount to at most the current balance",
        ],
    )


def account_not_initialized(address: str) -> OperationFailure:
    return OperationFailure(
        kind=FailureKind.ACCOUNT_NOT_INITIALIZED,
        message="Account not initialized, nothing to send from",
        details={"address": address, "balance": "0", "pendingCount": 0},
        next_steps=[
            f"Send funds to {address}",
            "Call initializeAccount or receiveAllPending to open the account",
        ],
    )


def invalid_address(field_name: str, value: Any) -> OperationFailure:
    return OperationFailure(
        kind=FailureKind.INVALID_ADDRESS,
        message=f"Invalid Nano address for {field_name}",
        details={"field": field_name, "value": value},
        next_steps=["Use an address starting with nano_ followed by 60 base32 characters"],
    )


def invalid_amount(field_name: str, value: Any) -> OperationFailure:
    return OperationFailure(
        kind=FailureKind.INVALID_AMOUNT,
        message=f"Invalid raw amount for {field_name}",
        details={"field": field_name, "value": value},
        next_steps=["Pass a positive integer string in raw units (1 XNO = 10^30 raw)"],
    )


def stale_frontier(address: str, attempts: int, expected: Optional[str] = None,
                   observed: Optional[str] = None) -> OperationFailure:
    return OperationFailure(
        kind=FailureKind.STALE_FRONTIER,
        message="Account frontier is out of date",
        details={"address": address, "attempts": attempts, "expectedFrontier": expected,
                 "observedFrontier": observed},
        next_steps=["Wait a few seconds for the node to settle and retry"],
    )


def work_timeout(elapsed_ms: Optional[int], block_hash: Optional[str] = None) -> OperationFailure:
    return OperationFailure(
        kind=FailureKind.WORK_TIMEOUT,
        message="Proof-of-work generation timed out",
        details={"elapsedMs": elapsed_ms, "hash": block_hash},
        next_steps=["Retry the operation; precomputed work may be available next time"],
    )


def rpc_failure(exc: Exception) -> OperationFailure:
    return OperationFailure(
        kind=FailureKind.RPC_FAILURE,
        message=f"RPC call failed: {exc}",
        details=get_error_context(exc),
        next_steps=["Check node availability and retry"],
        retryable=is_recoverable_error(exc),
    )


def from_exception(exc: NanoError) -> OperationFailure:
    """Map a raised error to a failure result."""
    if isinstance(exc, WorkTimeoutError):
        return work_timeout(exc.elapsed_ms, exc.details.get("hash"))
    if isinstance(exc, BlockRejectedError):
        return classify_rejection(exc.reason, exc.details)
    if isinstance(exc, (RPCError, WorkGenerationError)):
        return rpc_failure(exc)
    return OperationFailure(
        kind=FailureKind.BLOCK_REJECTED,
        message=str(exc),
        details=get_error_context(exc),
    )


_WORK_MARKERS = ("low", "insufficient", "invalid", "threshold")
_STALE_MARKERS = ("fork", "old", "gap previous", "previous")


def classify_rejection(error_text: str, context: Optional[Dict[str, Any]] = None) -> OperationFailure:
    """
    Classify a ``process`` rejection from the node's error text.

    Args:
        error_text: The node's ``error`` field
        context: Account, amount and balance at the time of the attempt
    """
    context = dict(context or {})
    text = (error_text or "").lower()
    context["nodeError"] = error_text

    if "work" in text and any(marker in text for marker in _WORK_MARKERS):
        return OperationFailure(
            kind=FailureKind.INSUFFICIENT_WORK,
            message="Block rejected: proof-of-work below threshold",
            details=context,
            next_steps=["Retry; fresh work will be generated"],
        )

    if any(marker in text for marker in _STALE_MARKERS):
        return OperationFailure(
            kind=FailureKind.STALE_FRONTIER,
            message="Block rejected: previous block is not the account frontier",
            details=context,
            next_steps=["Refresh account state and retry"],
        )

    if "balance" in text or "insufficient" in text:
        balance = context.get("balance")
        if balance is not None:
            context["balanceFormatted"] = format_balance(balance)
        return OperationFailure(
            kind=FailureKind.BLOCK_REJECTED,
            message="Block rejected: balance mismatch",
            details=context,
            next_steps=["Call getAccountInfo to check the confirmed balance"],
        )

    return OperationFailure(
        kind=FailureKind.BLOCK_REJECTED,
        message=f"Block rejected: {error_text}",
        details=context,
        next_steps=["Inspect the node error and account state before retrying"],
    )


# ==================== Success results ====================


@dataclass
class ReceiveOutcome:
    """Outcome of receiving one pending block."""

    pending_hash: str
    amount: int
    source: Optional[str]
    block_hash: Optional[str] = None
    subtype: Optional[str] = None
    balance: Optional[int] = None
    failure: Optional[OperationFailure] = None

    @property
    def success(self) -> bool:
        return self.failure is None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "pendingHash": self.pending_hash,
            "amount": str(self.amount),
            "amountXno": raw_to_xno(self.amount),
            "source": self.source,
        }
        if self.success:
            data.update({
                "hash": self.block_hash,
                "type": self.subtype,
                "balance": str(self.balance),
            })
        else:
            data.update(self.failure.to_dict())
        return data


@dataclass
class ReceiveSummary:
    """Per-block outcomes of draining an account's pending blocks."""

    address: str
    outcomes: List[ReceiveOutcome] = field(default_factory=list)
    balance: int = 0
    frontier: Optional[str] = None

    @property
    def received(self) -> List[ReceiveOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> List[ReceiveOutcome]:
        return [o for o in self.outcomes if not o.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "processed": len(self.outcomes),
            "receivedCount": len(self.received),
            "failedCount": len(self.failed),
            "balance": format_balance(self.balance),
            "frontier": self.frontier,
            "blocks": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class SendResult:
    hash: str
    address: str
    destination: str
    amount: int
    balance: int
    attempts: int = 1
    received: Optional[ReceiveSummary] = None

    success = True

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": True,
            "hash": self.hash,
            "from": self.address,
            "to": self.destination,
            "amount": str(self.amount),
            "amountXno": raw_to_xno(self.amount),
            "balance": format_balance(self.balance),
            "attempts": self.attempts,
        }
        if self.received is not None:
            data["receivedBeforeSend"] = self.received.to_dict()
        return data
