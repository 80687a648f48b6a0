"""
XNO unit helpers.

Nano amounts live on-chain as raw integers (1 XNO = 10^30 raw). These helpers
convert between raw and decimal XNO strings without relying on floats.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, ROUND_DOWN, localcontext
from typing import Any, Dict

from nano_mcp.core.constants import MAX_RAW_BALANCE, RAW_PER_XNO, XNO_DECIMALS

_QUANTIZER = Decimal(f"1e-{XNO_DECIMALS}")
_RAW_DIGITS = re.compile(r"[0-9]+")
# Enough digits for a 128-bit raw balance expressed in XNO
_PRECISION = 80


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("Amount must be int, float, str, or Decimal")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, str) and not value.isascii():
        raise ValueError("Amount must use ASCII digits")
    if isinstance(value, (int, float, str)):
        return Decimal(str(value).strip())
    raise ValueError("Amount must be int, float, str, or Decimal")


def parse_raw(value: Any) -> int:
    """Parse a raw amount (int or digit string) into a non-negative int."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid raw amount: {value}")
    if isinstance(value, int):
        raw = value
    elif isinstance(value, str) and _RAW_DIGITS.fullmatch(value.strip()):
        raw = int(value.strip())
    else:
        raise ValueError(f"Invalid raw amount: {value}")
    if raw < 0:
        raise ValueError("Raw amount cannot be negative")
    if raw > MAX_RAW_BALANCE:
        raise ValueError("Raw amount exceeds the 128-bit balance range")
    return raw


def quantize_xno(value: Any) -> Decimal:
    """Convert to a Decimal XNO amount with 30-decimal precision."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        try:
            dec = _to_decimal(value)
        except (InvalidOperation, ValueError, TypeError) as exc:
            raise ValueError(f"Invalid XNO amount: {value}") from exc

        if dec.is_nan():
            raise ValueError("Amount cannot be NaN")
        if dec.is_infinite():
            raise ValueError("Amount cannot be infinite")

        return dec.quantize(_QUANTIZER, rounding=ROUND_DOWN)


def xno_to_raw(value: Any) -> str:
    """Convert a decimal XNO amount to a raw integer string.

    Digits beyond the 30th decimal place are truncated.
    """
    dec = quantize_xno(value)
    if dec < 0:
        raise ValueError("Amount cannot be negative")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        raw = int((dec * RAW_PER_XNO).to_integral_value(rounding=ROUND_DOWN))
    if raw > MAX_RAW_BALANCE:
        raise ValueError("Amount exceeds the 128-bit balance range")
    return str(raw)


def raw_to_xno(value: Any) -> str:
    """Convert a raw amount to its shortest exact decimal XNO string.

    >>> raw_to_xno("1100000000000000000000000000")
    '0.0011'
    """
    raw = parse_raw(value)
    whole, fraction = divmod(raw, RAW_PER_XNO)
    if fraction == 0:
        return str(whole)
    digits = str(fraction).rjust(XNO_DECIMALS, "0").rstrip("0")
    return f"{whole}.{digits}"


def format_xno(value: Any, decimals: int = 6) -> str:
    """Format a raw amount for display, truncated to ``decimals`` places."""
    raw = parse_raw(value)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        dec = (Decimal(raw) / RAW_PER_XNO).quantize(
            Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN
        )
    return f"{dec:f}"


def format_balance(value: Any) -> Dict[str, str]:
    """Describe a raw amount in raw, exact XNO and display form."""
    raw = parse_raw(value)
    display = format_xno(raw)
    return {
        "raw": str(raw),
        "xno": raw_to_xno(raw),
        "display": f"{display} XNO",
    }
