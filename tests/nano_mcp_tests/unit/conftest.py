"""
Shared fixtures: deterministic accounts and an in-memory Nano node.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from nano_mcp.core.accounts import address_from_public_key, generate_account
from nano_mcp.core.blocks import hash_state_block
from nano_mcp.core.config import NanoConfig
from nano_mcp.core.constants import ZERO_HASH
from nano_mcp.core.exceptions import RPCResponseError
from nano_mcp.core.metrics import NanoMetrics
from nano_mcp.core.transactions import NanoTransactions
from nano_mcp.core.work_cache import WorkCache

REPRESENTATIVE = "nano_3t6k35gi95xu6tergt6p69ck76ogmitsa8mnijtpxm9fkcm736xtoncuohr3"


class FakeNode:
    """
    In-memory node answering ``account_info``, ``pending``, ``work_generate``
    and ``process`` with the same shapes a real node returns.
    """

    def __init__(self) -> None:
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.pending: Dict[str, Dict[str, Dict[str, str]]] = {}
        self.calls: List[tuple] = []
        self.process_errors: List[Optional[str]] = []
        self.processed: List[Dict[str, Any]] = []
        self.stale_reads = 0
        self._stale_views: Dict[str, Optional[Dict[str, Any]]] = {}
        self._work_counter = 0

    # Test helpers

    def open_account(self, address: str, balance: int, frontier: str = "F" * 64) -> None:
        self.accounts[address] = {
            "frontier": frontier,
            "balance": balance,
            "representative": REPRESENTATIVE,
            "block_count": 1,
        }

    def add_pending(self, address: str, block_hash: str, amount: int, source: str = REPRESENTATIVE) -> None:
        self.pending.setdefault(address, {})[block_hash] = {"amount": str(amount), "source": source}

    def actions(self, name: str) -> List[Dict[str, Any]]:
        return [params for action, params in self.calls if action == name]

    # Transport interface

    def call(
        self,
        action: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        total_timeout: Optional[float] = None,
    ):
        params = dict(params or {})
        self.calls.append((action, params))
        return getattr(self, f"_{action}")(params)

    def _error(self, action: str, message: str):
        return RPCResponseError(f"Node rejected {action}: {message}", action=action, node_error=message)

    def _account_info(self, params):
        account = params["account"]
        if self.stale_reads > 0 and account in self._stale_views:
            self.stale_reads -= 1
            acct = self._stale_views[account]
        else:
            acct = self.accounts.get(account)
        if acct is None:
            raise self._error("account_info", "Account not found")
        return {
            "frontier": acct["frontier"],
            "balance": str(acct["balance"]),
            "representative": acct["representative"],
            "block_count": str(acct["block_count"]),
        }

    def _pending(self, params):
        blocks = self.pending.get(params["account"], {})
        if not blocks:
            return {"blocks": ""}
        return {"blocks": {h: dict(v) for h, v in blocks.items()}}

    def _work_generate(self, params):
        self._work_counter += 1
        return {"work": f"{self._work_counter:016x}", "hash": params["hash"]}

    def _process(self, params):
        if self.process_errors:
            error = self.process_errors.pop(0)
            if error:
                raise self._error("process", error)

        block = params["block"]
        account = block["account"]
        acct = self.accounts.get(account)
        frontier = acct["frontier"] if acct else ZERO_HASH
        old_balance = acct["balance"] if acct else 0
        new_balance = int(block["balance"])

        if block["previous"] != frontier:
            raise self._error("process", "Fork")

        subtype = params["subtype"]
        if subtype in ("open", "receive"):
            entry = self.pending.get(account, {}).get(block["link"])
            if entry is None:
                raise self._error("process", "Unreceivable")
            if new_balance != old_balance + int(entry["amount"]):
                raise self._error("process", "Balance and amount delta do not match")
            del self.pending[account][block["link"]]

        block_hash = hash_state_block(
            account, block["previous"], block["representative"], new_balance, block["link"]
        )
        if subtype == "send":
            destination = address_from_public_key(block["link"])
            self.add_pending(destination, block_hash, old_balance - new_balance, account)

        self._stale_views[account] = dict(acct) if acct else None
        self.accounts[account] = {
            "frontier": block_hash,
            "balance": new_balance,
            "representative": block["representative"],
            "block_count": (acct["block_count"] if acct else 0) + 1,
        }
        self.processed.append({"subtype": subtype, "hash": block_hash, **block})
        return {"hash": block_hash}


@pytest.fixture
def node():
    return FakeNode()


@pytest.fixture
def metrics():
    return NanoMetrics()


@pytest.fixture
def wallet():
    return generate_account(seed="1" * 64)


@pytest.fixture
def recipient():
    return generate_account(seed="2" * 64)


@pytest.fixture
def config():
    return NanoConfig(
        rpc_nodes=("http://node.test",),
        default_representative=REPRESENTATIVE,
        frontier_retries=3,
        frontier_retry_delay=0.0,
        settle_delay=0.0,
    )


@pytest.fixture
def work_cache(node, metrics):
    return WorkCache(node.call, ttl=60, max_size=100, metrics=metrics)


@pytest.fixture
def transactions(node, work_cache, config, metrics):
    return NanoTransactions(node, work_cache, config=config, sleep=lambda _: None, metrics=metrics)
