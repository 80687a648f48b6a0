"""
State block construction and signing.

The signer owns the balance arithmetic: callers pass the balance the wallet
held *before* the operation together with the amount, and the signer applies
the delta exactly once.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict

import ed25519_blake2b

from nano_mcp.core.accounts import (
    address_from_private_key,
    normalize_address,
    public_key_from_address,
)
from nano_mcp.core.constants import MAX_RAW_BALANCE, STATE_BLOCK_PREAMBLE, ZERO_HASH
from nano_mcp.core.exceptions import SigningError


class BlockSubtype(str, Enum):
    OPEN = "open"
    RECEIVE = "receive"
    SEND = "send"
    CHANGE = "change"


@dataclass(frozen=True)
class StateBlock:
    """A signed, submittable state block."""

    account: str
    previous: str
    representative: str
    balance: int
    link: str
    signature: str
    work: str
    subtype: BlockSubtype
    type: str = "state"

    @property
    def hash(self) -> str:
        return hash_state_block(
            self.account, self.previous, self.representative, self.balance, self.link
        )

    def to_rpc(self) -> Dict[str, Any]:
        """Block body for the ``process`` action with ``json_block``."""
        return {
            "type": self.type,
            "account": self.account,
            "previous": self.previous,
            "representative": self.representative,
            "balance": str(self.balance),
            "link": self.link,
            "signature": self.signature,
            "work": self.work,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["balance"] = str(self.balance)
        data["subtype"] = self.subtype.value
        data["hash"] = self.hash
        return data


def hash_state_block(
    account: str, previous: str, representative: str, balance: int, link: str
) -> str:
    """Compute the uppercase hex blake2b-256 hash of a state block."""
    if balance < 0 or balance > MAX_RAW_BALANCE:
        raise SigningError("Balance outside the 128-bit range", details={"balance": str(balance)})
    digest = hashlib.blake2b(digest_size=32)
    digest.update(STATE_BLOCK_PREAMBLE)
    digest.update(bytes.fromhex(public_key_from_address(account)))
    digest.update(bytes.fromhex(previous))
    digest.update(bytes.fromhex(public_key_from_address(representative)))
    digest.update(balance.to_bytes(16, "big"))
    digest.update(bytes.fromhex(link))
    return digest.hexdigest().upper()


def _sign(
    private_key: str,
    account: str,
    previous: str,
    representative: str,
    balance: int,
    link: str,
    work: str,
    subtype: BlockSubtype,
) -> StateBlock:
    try:
        signer_address = address_from_private_key(private_key)
    except ValueError as exc:
        raise SigningError(f"Invalid private key: {exc}") from exc
    if signer_address != normalize_address(account):
        raise SigningError(
            "Private key does not belong to the block account",
            details={"account": account},
        )

    block_hash = hash_state_block(account, previous, representative, balance, link)
    signing_key = ed25519_blake2b.SigningKey(bytes.fromhex(private_key))
    signature = signing_key.sign(bytes.fromhex(block_hash)).hex().upper()
    return StateBlock(
        account=normalize_address(account),
        previous=previous.upper(),
        representative=normalize_address(representative),
        balance=balance,
        link=link.upper(),
        signature=signature,
        work=work,
        subtype=subtype,
    )


def sign_receive_block(
    *,
    account: str,
    private_key: str,
    previous: str,
    representative: str,
    wallet_balance_raw: int,
    amount_raw: int,
    source_hash: str,
    work: str,
) -> StateBlock:
    """
    Build and sign a receive block (or an open block when ``previous`` is zero).

    Args:
        wallet_balance_raw: Balance before receiving
        amount_raw: Amount of the pending block being received
        source_hash: Hash of the pending send block, used as ``link``
    """
    if amount_raw < 0:
        raise SigningError("Receive amount cannot be negative")
    subtype = BlockSubtype.OPEN if previous == ZERO_HASH else BlockSubtype.RECEIVE
    return _sign(
        private_key,
        account,
        previous,
        representative,
        wallet_balance_raw + amount_raw,
        source_hash,
        work,
        subtype,
    )


def sign_send_block(
    *,
    account: str,
    private_key: str,
    previous: str,
    representative: str,
    wallet_balance_raw: int,
    amount_raw: int,
    destination: str,
    work: str,
) -> StateBlock:
    """
    Build and sign a send block.

    Args:
        wallet_balance_raw: Balance before sending
        amount_raw: Amount to send
        destination: Recipient address; its public key becomes ``link``
    """
    if amount_raw <= 0:
        raise SigningError("Send amount must be positive")
    new_balance = wallet_balance_raw - amount_raw
    if new_balance < 0:
        raise SigningError(
            "Send amount exceeds balance",
            details={"balance": str(wallet_balance_raw), "amount": str(amount_raw)},
        )
    try:
        link = public_key_from_address(destination)
    except ValueError as exc:
        raise SigningError(f"Invalid destination address: {exc}") from exc
    return _sign(
        private_key,
        account,
        previous,
        representative,
        new_balance,
        link,
        work,
        BlockSubtype.SEND,
    )
