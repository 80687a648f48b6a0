"""
Send and receive orchestration.

Builds, signs and submits state blocks for one account at a time. Each step
depends on the frontier produced by the previous one, so blocks for a single
account are always processed sequentially; different accounts may be driven
concurrently from separate threads sharing one work cache.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from nano_mcp.core.accounts import (
    address_from_private_key,
    generate_account,
    public_key_from_address,
)
from nano_mcp.core.blocks import StateBlock, sign_receive_block, sign_send_block
from nano_mcp.core.config import NanoConfig
from nano_mcp.core.constants import ZERO_HASH
from nano_mcp.core.exceptions import (
    BlockRejectedError,
    NanoError,
    RPCError,
    RPCResponseError,
    ValidationError,
    WorkTimeoutError,
)
from nano_mcp.core.metrics import NanoMetrics, default_metrics
from nano_mcp.core.results import (
    FailureKind,
    OperationFailure,
    ReceiveOutcome,
    ReceiveSummary,
    SendResult,
    account_not_initialized,
    classify_rejection,
    from_exception,
    insufficient_balance,
    invalid_address,
    invalid_amount,
    rpc_failure,
    stale_frontier,
    work_timeout,
)
from nano_mcp.core.units import format_balance
from nano_mcp.core.validation import (
    is_valid_address,
    is_valid_raw_amount,
    validate_address,
    validate_private_key,
)
from nano_mcp.core.work_cache import BlockKind, WorkCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountState:
    """Account snapshot; frontier and balance always come from one ``account_info`` reply."""

    address: str
    frontier: str
    balance: int
    representative: Optional[str] = None
    block_count: int = 0

    @property
    def opened(self) -> bool:
        return self.frontier != ZERO_HASH

    @property
    def work_hash(self) -> str:
        """Hash that proof-of-work for the next block must target."""
        if self.opened:
            return self.frontier
        return public_key_from_address(self.address)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "opened": self.opened,
            "frontier": self.frontier,
            "balance": format_balance(self.balance),
            "representative": self.representative,
            "blockCount": self.block_count,
        }


@dataclass(frozen=True)
class PendingBlock:
    hash: str
    amount: int
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = format_balance(self.amount)
        return {"hash": self.hash, "amount": data["raw"], "amountXno": data["xno"], "source": self.source}


class _FrontierLagError(NanoError):
    """The node did not report the submitted block as the frontier in time."""

    def __init__(self, address: str, attempts: int, expected: str, observed: str) -> None:
        super().__init__("Account frontier is out of date")
        self.failure = stale_frontier(address, attempts, expected, observed)
        self.block: Optional[StateBlock] = None


class NanoTransactions:
    """
    Account queries plus the receive and send orchestrators.

    Args:
        transport: Object exposing ``call(action, params, timeout=None)``
        work_cache: Shared proof-of-work cache
        config: Runtime settings
        sleep: Delay function, replaced in tests
    """

    def __init__(
        self,
        transport,
        work_cache: WorkCache,
        config: Optional[NanoConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        metrics: Optional[NanoMetrics] = None,
    ) -> None:
        self.transport = transport
        self.work_cache = work_cache
        self.config = config or NanoConfig()
        self.sleep = sleep
        self.metrics = metrics or default_metrics()
        self._precompute_executor: Optional[ThreadPoolExecutor] = None
        if self.config.auto_precompute:
            self._precompute_executor = ThreadPoolExecutor(
                max_workers=2, thread_name_prefix="work-precompute"
            )

    # ==================== Queries ====================

    def get_account_info(self, address: str) -> AccountState:
        """
        Fetch the account's frontier, balance and representative.

        An unknown account is reported as unopened (zero frontier, zero balance).
        """
        try:
            info = self.transport.call(
                "account_info", {"account": address, "representative": "true"}
            )
        except RPCResponseError as exc:
            if "account not found" in exc.node_error.lower():
                return AccountState(address=address, frontier=ZERO_HASH, balance=0)
            raise
        return AccountState(
            address=address,
            frontier=info["frontier"].upper(),
            balance=int(info["balance"]),
            representative=info.get("representative"),
            block_count=int(info.get("block_count", 0)),
        )

    def get_pending_blocks(self, address: str) -> List[PendingBlock]:
        """List receivable blocks, ordered by hash."""
        reply = self.transport.call(
            "pending",
            {
                "account": address,
                "count": str(self.config.pending_count),
                "source": "true",
                "threshold": "1",
            },
        )
        blocks = reply.get("blocks") or {}
        pending = []
        for block_hash, entry in blocks.items():
            if isinstance(entry, dict):
                amount, source = int(entry["amount"]), entry.get("source")
            else:
                amount, source = int(entry), None
            pending.append(PendingBlock(hash=block_hash.upper(), amount=amount, source=source))
        return sorted(pending, key=lambda p: p.hash)

    def get_balance(self, address: str) -> Dict[str, Any]:
        state = self.get_account_info(address)
        pending = self.get_pending_blocks(address)
        return {
            "address": address,
            "opened": state.opened,
            "balance": format_balance(state.balance),
            "pending": format_balance(sum(p.amount for p in pending)),
            "pendingCount": len(pending),
        }

    def generate_wallet(self) -> Dict[str, str]:
        account = generate_account()
        logger.info(
            "Generated wallet %s",
            account["address"],
            extra={"event": "wallet.generated"},
        )
        return {
            "address": account["address"],
            "publicKey": account["public_key"],
            "privateKey": account["private_key"],
            "seed": account["seed"],
        }

    # ==================== Submission ====================

    def _submit(self, block: StateBlock) -> str:
        """Submit a signed block, returning its hash.

        Raises:
            BlockRejectedError: The node refused the block
        """
        try:
            reply = self.transport.call(
                "process",
                {"json_block": "true", "subtype": block.subtype.value, "block": block.to_rpc()},
            )
        except RPCResponseError as exc:
            self.metrics.blocks_processed.labels(subtype=block.subtype.value, outcome="rejected").inc()
            raise BlockRejectedError(
                f"Block rejected: {exc.node_error}",
                reason=exc.node_error,
                details={"account": block.account, "previous": block.previous,
                         "balance": str(block.balance)},
            ) from exc

        block_hash = reply.get("hash")
        if not block_hash:
            self.metrics.blocks_processed.labels(subtype=block.subtype.value, outcome="rejected").inc()
            raise BlockRejectedError("Node returned no block hash", reason="no hash returned")
        self.metrics.blocks_processed.labels(subtype=block.subtype.value, outcome="accepted").inc()
        return block_hash.upper()

    def _await_frontier(self, address: str, expected: str) -> AccountState:
        """Refetch account state until the node reports ``expected`` as the frontier."""
        state = self.get_account_info(address)
        attempts = 1
        while state.frontier != expected and attempts <= self.config.frontier_retries:
            logger.info(
                "Frontier for %s not yet %s, retry %d/%d",
                address,
                expected,
                attempts,
                self.config.frontier_retries,
                extra={"event": "receive.frontier_lag"},
            )
            self.sleep(self.config.frontier_retry_delay)
            state = self.get_account_info(address)
            attempts += 1
        if state.frontier != expected:
            raise _FrontierLagError(address, attempts, expected, state.frontier)
        return state

    def _schedule_precompute(self, frontier: str) -> None:
        if self._precompute_executor is not None:
            self._precompute_executor.submit(self.work_cache.precompute_for_account, frontier)

    # ==================== Receive ====================

    def create_receive_block(
        self, private_key: str, state: AccountState, pending: PendingBlock
    ) -> Tuple[StateBlock, bool]:
        """
        Build and sign the open/receive block for one pending block.

        Returns:
            Tuple of (block, whether the work came from the cache)
        """
        work_hash = state.work_hash
        work, from_cache = self.work_cache.obtain(work_hash, BlockKind.RECEIVE)
        try:
            block = sign_receive_block(
                account=state.address,
                private_key=private_key,
                previous=state.frontier,
                representative=state.representative or self.config.default_representative,
                wallet_balance_raw=state.balance,
                amount_raw=pending.amount,
                source_hash=pending.hash,
                work=work,
            )
        except NanoError:
            if from_cache:
                self.work_cache.release(work_hash, BlockKind.RECEIVE)
            raise
        return block, from_cache

    def _receive_one(
        self, private_key: str, state: AccountState, pending: PendingBlock
    ) -> Tuple[AccountState, ReceiveOutcome]:
        work_hash = state.work_hash
        block, _ = self.create_receive_block(private_key, state, pending)
        try:
            block_hash = self._submit(block)
        finally:
            # Accepted or not, the frontier this work targets may have moved
            self.work_cache.invalidate(work_hash, BlockKind.RECEIVE)

        logger.info(
            "Received %s into %s as %s",
            pending.hash,
            state.address,
            block_hash,
            extra={"event": "receive.accepted", "subtype": block.subtype.value},
        )
        try:
            new_state = self._await_frontier(state.address, block_hash)
        except _FrontierLagError as exc:
            exc.block = block
            raise
        except RPCError as exc:
            # Block is on chain; continue from the state it produced
            logger.warning(
                "Could not confirm frontier %s for %s: %s",
                block_hash,
                state.address,
                exc,
                extra={"event": "receive.confirm_failed"},
            )
            new_state = AccountState(
                address=state.address,
                frontier=block_hash,
                balance=block.balance,
                representative=block.representative,
                block_count=state.block_count + 1,
            )
        outcome = ReceiveOutcome(
            pending_hash=pending.hash,
            amount=pending.amount,
            source=pending.source,
            block_hash=block_hash,
            subtype=block.subtype.value,
            balance=new_state.balance,
        )
        return new_state, outcome

    def _receive_with_retry(
        self, private_key: str, state: AccountState, pending: PendingBlock
    ) -> Tuple[AccountState, ReceiveOutcome]:
        """Receive one block, re-reading state after stale-frontier rejections.

        At most ``frontier_retries`` extra attempts are made before the
        rejection is raised to the caller.
        """
        retries = 0
        while True:
            try:
                return self._receive_one(private_key, state, pending)
            except BlockRejectedError as exc:
                kind = from_exception(exc).kind
                if kind is not FailureKind.STALE_FRONTIER or retries >= self.config.frontier_retries:
                    raise
                retries += 1
                logger.info(
                    "Receive of %s into %s hit a stale frontier, retry %d/%d",
                    pending.hash,
                    state.address,
                    retries,
                    self.config.frontier_retries,
                    extra={"event": "receive.stale_retry", "reason": exc.reason},
                )
                self.sleep(self.config.frontier_retry_delay)
                state = self.get_account_info(state.address)

    def _refresh_after_failure(self, state: AccountState) -> AccountState:
        try:
            return self.get_account_info(state.address)
        except RPCError as exc:
            logger.warning(
                "Could not refresh %s after failed receive: %s",
                state.address,
                exc,
                extra={"event": "receive.refresh_failed"},
            )
            return state

    def _check_key(self, address: str, private_key: str) -> str:
        address = validate_address(address)
        validate_private_key(private_key)
        if address_from_private_key(private_key) != address:
            raise ValidationError(
                "Private key does not belong to address",
                details={"field": "privateKey", "address": address},
            )
        return address

    def receive_all_pending(
        self, address: str, private_key: str
    ) -> Union[ReceiveSummary, OperationFailure]:
        """
        Receive every pending block for ``address``, one at a time.

        A failure on one block is recorded in its outcome and the remaining
        blocks are still attempted.

        Raises:
            ValidationError: If the address or key is malformed or mismatched
        """
        address = self._check_key(address, private_key)
        try:
            state = self.get_account_info(address)
            pending = self.get_pending_blocks(address)
        except RPCError as exc:
            return rpc_failure(exc)

        summary = ReceiveSummary(address=address)
        logger.info(
            "Receiving %d pending blocks for %s",
            len(pending),
            address,
            extra={"event": "receive.start", "opened": state.opened},
        )

        lagging: Optional[OperationFailure] = None
        for item in pending:
            if lagging is not None:
                summary.outcomes.append(ReceiveOutcome(
                    pending_hash=item.hash, amount=item.amount, source=item.source, failure=lagging,
                ))
                continue
            try:
                state, outcome = self._receive_with_retry(private_key, state, item)
            except _FrontierLagError as exc:
                # Block was accepted but the node has not caught up
                lagging = exc.failure
                state = self._refresh_after_failure(state)
                outcome = ReceiveOutcome(
                    pending_hash=item.hash, amount=item.amount, source=item.source,
                    block_hash=exc.block.hash, subtype=exc.block.subtype.value,
                    balance=exc.block.balance,
                )
            except NanoError as exc:
                failure = from_exception(exc)
                failure.details.setdefault("pendingHash", item.hash)
                logger.warning(
                    "Failed to receive %s for %s: %s",
                    item.hash,
                    address,
                    failure.message,
                    extra={"event": "receive.failed", "kind": failure.kind.value},
                )
                outcome = ReceiveOutcome(
                    pending_hash=item.hash, amount=item.amount, source=item.source, failure=failure,
                )
                state = self._refresh_after_failure(state)
            summary.outcomes.append(outcome)

        summary.balance = state.balance
        summary.frontier = state.frontier if state.opened else None
        if summary.received and state.opened:
            self._schedule_precompute(state.frontier)
        return summary

    def initialize_account(
        self, address: str, private_key: str
    ) -> Union[Dict[str, Any], OperationFailure]:
        """Open an account by receiving its first pending block."""
        address = self._check_key(address, private_key)
        try:
            state = self.get_account_info(address)
            if state.opened:
                return {"initialized": True, "alreadyOpened": True, **state.to_dict()}
            pending = self.get_pending_blocks(address)
        except RPCError as exc:
            return rpc_failure(exc)

        if not pending:
            return account_not_initialized(address)

        try:
            state, outcome = self._receive_with_retry(private_key, state, pending[0])
        except _FrontierLagError as exc:
            return exc.failure
        except NanoError as exc:
            return from_exception(exc)
        return {"initialized": True, "alreadyOpened": False, "block": outcome.to_dict(), **state.to_dict()}

    # ==================== Send ====================

    def send_transaction(
        self, address: str, private_key: str, destination: str, amount_raw: Any
    ) -> Union[SendResult, OperationFailure]:
        """
        Send ``amount_raw`` from ``address`` to ``destination``.

        Pending blocks are received first so the send is built on the
        settled frontier. Insufficient-work and stale-frontier rejections
        restart the whole operation up to ``send_retries`` more times.

        Raises:
            ValidationError: If the sender address or key is malformed or mismatched
        """
        if not is_valid_address(destination):
            return invalid_address("toAddress", destination)
        if not is_valid_raw_amount(amount_raw) or int(amount_raw) == 0:
            return invalid_amount("amountRaw", amount_raw)
        address = self._check_key(address, private_key)
        destination = validate_address(destination, "toAddress")
        amount = int(amount_raw)

        total_attempts = 1 + self.config.send_retries
        received: Optional[ReceiveSummary] = None
        failure: Optional[OperationFailure] = None

        for attempt in range(1, total_attempts + 1):
            drained = self.receive_all_pending(address, private_key)
            if isinstance(drained, OperationFailure):
                return drained
            if drained.outcomes:
                received = drained
            if drained.received:
                self.sleep(self.config.settle_delay)

            try:
                state = self.get_account_info(address)
            except RPCError as exc:
                return rpc_failure(exc)

            if not state.opened:
                return account_not_initialized(address)
            if amount > state.balance:
                logger.info(
                    "Send from %s refused: balance %d below %d",
                    address,
                    state.balance,
                    amount,
                    extra={"event": "send.insufficient_balance"},
                )
                return insufficient_balance(address, state.balance, amount)

            outcome = self._send_once(private_key, state, destination, amount)
            if isinstance(outcome, str):
                self._schedule_precompute(outcome)
                return SendResult(
                    hash=outcome,
                    address=address,
                    destination=destination,
                    amount=amount,
                    balance=state.balance - amount,
                    attempts=attempt,
                    received=received,
                )

            failure = outcome
            failure.details["attempts"] = attempt
            if failure.kind not in (FailureKind.INSUFFICIENT_WORK, FailureKind.STALE_FRONTIER):
                return failure
            if attempt < total_attempts:
                logger.warning(
                    "Send from %s rejected (%s), retrying %d/%d",
                    address,
                    failure.kind.value,
                    attempt,
                    self.config.send_retries,
                    extra={"event": "send.retry", "kind": failure.kind.value},
                )
        return failure

    def _send_once(
        self, private_key: str, state: AccountState, destination: str, amount: int
    ) -> Union[str, OperationFailure]:
        """Build, sign and submit one send block. Returns its hash or a failure."""
        try:
            work, from_cache = self.work_cache.obtain(state.frontier, BlockKind.SEND)
        except WorkTimeoutError as exc:
            return work_timeout(exc.elapsed_ms, state.frontier)
        except NanoError as exc:
            return rpc_failure(exc)

        try:
            block = sign_send_block(
                account=state.address,
                private_key=private_key,
                previous=state.frontier,
                representative=state.representative or self.config.default_representative,
                wallet_balance_raw=state.balance,
                amount_raw=amount,
                destination=destination,
                work=work,
            )
        except NanoError:
            if from_cache:
                self.work_cache.release(state.frontier, BlockKind.SEND)
            raise

        context = {
            "address": state.address,
            "destination": destination,
            "amount": str(amount),
            "balance": str(state.balance),
            "frontier": state.frontier,
        }
        try:
            block_hash = self._submit(block)
        except BlockRejectedError as exc:
            return classify_rejection(exc.reason, context)
        except RPCError as exc:
            return rpc_failure(exc)
        finally:
            self.work_cache.invalidate(state.frontier, BlockKind.SEND)

        logger.info(
            "Sent %d raw from %s to %s in %s",
            amount,
            state.address,
            destination,
            block_hash,
            extra={"event": "send.accepted"},
        )
        return block_hash

    def shutdown(self) -> None:
        if self._precompute_executor is not None:
            self._precompute_executor.shutdown(wait=False)
