"""
Input validation for nano-mcp.

Boolean predicates are used for precondition checks before any RPC call is
attempted; the ``validate_*`` variants raise ValidationError with a message
suitable for returning to an agent.
"""

from __future__ import annotations

import re
from typing import Any

from nano_mcp.core.accounts import normalize_address, public_key_from_address
from nano_mcp.core.exceptions import ValidationError
from nano_mcp.core.units import parse_raw

ADDRESS_PATTERN = re.compile(r"^(nano|xrb)_[13][13456789abcdefghijkmnopqrstuwxyz]{59}$")
HEX64_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


def is_valid_address(address: Any) -> bool:
    """Check address syntax and checksum."""
    if not isinstance(address, str) or not ADDRESS_PATTERN.match(address.strip()):
        return False
    try:
        public_key_from_address(address)
    except ValueError:
        return False
    return True


def is_valid_private_key(private_key: Any) -> bool:
    return isinstance(private_key, str) and bool(HEX64_PATTERN.match(private_key))


def is_valid_hash(block_hash: Any) -> bool:
    return isinstance(block_hash, str) and bool(HEX64_PATTERN.match(block_hash))


def is_valid_raw_amount(amount: Any) -> bool:
    try:
        parse_raw(amount)
    except ValueError:
        return False
    return True


def validate_address(address: Any, field: str = "address") -> str:
    """
    Validate and normalize a Nano address.

    Returns:
        The address with the ``nano_`` prefix

    Raises:
        ValidationError: If the address is malformed
    """
    if not is_valid_address(address):
        raise ValidationError(
            f"Invalid Nano address for {field}",
            details={"field": field, "value": address, "expected": "nano_ followed by 60 base32 characters"},
        )
    return normalize_address(address)


def validate_private_key(private_key: Any, field: str = "privateKey") -> str:
    if not is_valid_private_key(private_key):
        raise ValidationError(
            f"Invalid private key for {field}",
            details={"field": field, "expected": "64 hexadecimal characters"},
        )
    return private_key


def validate_raw_amount(amount: Any, field: str = "amountRaw", allow_zero: bool = False) -> int:
    """Validate a raw amount and return it as an int."""
    try:
        raw = parse_raw(amount)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid raw amount for {field}: {exc}",
            details={"field": field, "value": amount, "expected": "non-negative integer string in raw units"},
        ) from exc
    if raw == 0 and not allow_zero:
        raise ValidationError(
            f"Amount for {field} must be greater than zero",
            details={"field": field, "value": amount},
        )
    return raw
