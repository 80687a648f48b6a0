"""
Tests for state block hashing and signing.
"""

from dataclasses import replace

import ed25519_blake2b
import pytest

from nano_mcp.core.accounts import generate_account, public_key_from_address
from nano_mcp.core.blocks import (
    BlockSubtype,
    hash_state_block,
    sign_receive_block,
    sign_send_block,
)
from nano_mcp.core.constants import MAX_RAW_BALANCE, ZERO_HASH
from nano_mcp.core.exceptions import SigningError

REP = "nano_3t6k35gi95xu6tergt6p69ck76ogmitsa8mnijtpxm9fkcm736xtoncuohr3"
FRONTIER = "F" * 64
SOURCE = "A" * 64
WORK = "0000000000000001"


def verify_signature(block):
    verifying_key = ed25519_blake2b.VerifyingKey(bytes.fromhex(public_key_from_address(block.account)))
    verifying_key.verify(bytes.fromhex(block.signature), bytes.fromhex(block.hash))


@pytest.fixture
def account():
    return generate_account(seed="3" * 64)


@pytest.fixture
def other():
    return generate_account(seed="4" * 64)


def receive(account, previous=FRONTIER, balance=100, amount=50):
    return sign_receive_block(
        account=account["address"],
        private_key=account["private_key"],
        previous=previous,
        representative=REP,
        wallet_balance_raw=balance,
        amount_raw=amount,
        source_hash=SOURCE,
        work=WORK,
    )


class TestHashing:
    def test_hash_is_deterministic_hex(self, account):
        first = hash_state_block(account["address"], FRONTIER, REP, 10, SOURCE)
        second = hash_state_block(account["address"], FRONTIER, REP, 10, SOURCE)
        assert first == second
        assert len(first) == 64
        assert first == first.upper()

    def test_hash_depends_on_balance(self, account):
        assert hash_state_block(account["address"], FRONTIER, REP, 10, SOURCE) != hash_state_block(
            account["address"], FRONTIER, REP, 11, SOURCE
        )

    def test_balance_range(self, account):
        with pytest.raises(SigningError):
            hash_state_block(account["address"], FRONTIER, REP, MAX_RAW_BALANCE + 1, SOURCE)


class TestReceiveBlock:
    def test_balance_delta_applied_once(self, account):
        block = receive(account, balance=100, amount=50)
        assert block.balance == 150
        assert block.subtype == BlockSubtype.RECEIVE
        assert block.link == SOURCE

    def test_open_block(self, account):
        block = receive(account, previous=ZERO_HASH, balance=0, amount=50)
        assert block.subtype == BlockSubtype.OPEN
        assert block.balance == 50

    def test_signature_verifies(self, account):
        block = receive(account)
        verify_signature(block)

    def test_tampered_block_fails_verification(self, account):
        block = receive(account)
        with pytest.raises(ed25519_blake2b.BadSignatureError):
            verify_signature(replace(block, balance=block.balance + 1))

    def test_wrong_key_rejected(self, account, other):
        with pytest.raises(SigningError, match="does not belong"):
            sign_receive_block(
                account=account["address"],
                private_key=other["private_key"],
                previous=FRONTIER,
                representative=REP,
                wallet_balance_raw=0,
                amount_raw=1,
                source_hash=SOURCE,
                work=WORK,
            )

    def test_rpc_shape(self, account):
        body = receive(account).to_rpc()
        assert body["type"] == "state"
        assert body["balance"] == "150"
        assert set(body) == {"type", "account", "previous", "representative", "balance", "link",
                             "signature", "work"}


class TestSendBlock:
    def send(self, account, destination, balance=100, amount=40):
        return sign_send_block(
            account=account["address"],
            private_key=account["private_key"],
            previous=FRONTIER,
            representative=REP,
            wallet_balance_raw=balance,
            amount_raw=amount,
            destination=destination,
            work=WORK,
        )

    def test_balance_delta_applied_once(self, account, other):
        block = self.send(account, other["address"])
        assert block.balance == 60
        assert block.subtype == BlockSubtype.SEND
        assert block.link == public_key_from_address(other["address"])
        verify_signature(block)

    def test_overdraw_rejected(self, account, other):
        with pytest.raises(SigningError, match="exceeds balance"):
            self.send(account, other["address"], balance=10, amount=11)

    def test_zero_amount_rejected(self, account, other):
        with pytest.raises(SigningError):
            self.send(account, other["address"], amount=0)

    def test_bad_destination(self, account):
        with pytest.raises(SigningError, match="destination"):
            self.send(account, "nano_bad")

    def test_to_dict_includes_hash(self, account, other):
        block = self.send(account, other["address"])
        data = block.to_dict()
        assert data["hash"] == block.hash
        assert data["subtype"] == "send"
