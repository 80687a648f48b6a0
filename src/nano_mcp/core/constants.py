"""
Nano protocol constants.

Work thresholds are network-protocol values and must not be tuned.
"""

from __future__ import annotations

# Units
XNO_DECIMALS = 30
RAW_PER_XNO = 10**XNO_DECIMALS
MAX_RAW_BALANCE = 2**128 - 1

# Hashes and keys
ZERO_HASH = "0" * 64
HASH_HEX_LENGTH = 64
KEY_HEX_LENGTH = 64

# Proof-of-work thresholds (send/change blocks use the stricter one)
SEND_WORK_THRESHOLD = "fffffff800000000"
RECEIVE_WORK_THRESHOLD = "fffffe0000000000"

# State block preamble: 31 zero bytes followed by the block type 6
STATE_BLOCK_PREAMBLE = bytes(31) + bytes([6])

# Addresses
ADDRESS_PREFIXES = ("nano_", "xrb_")
ADDRESS_ALPHABET = "13456789abcdefghijkmnopqrstuwxyz"

DEFAULT_REPRESENTATIVE = "nano_3qya5xpjfsbk3ndfebo9dsrj6iy6f6idmogqtn1mtzdtwnxu6rw3dz18i6xf"
DEFAULT_RPC_NODES = (
    "https://uk1.public.xnopay.com/proxy",
    "https://node.somenano.com/proxy",
)
