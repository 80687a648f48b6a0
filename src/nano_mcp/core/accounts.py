"""
Nano account primitives.

Converts between ``nano_`` addresses and 32-byte public keys, and derives
keys from seeds. Addresses encode the public key in Nano's base32 alphabet
followed by a 5-byte blake2b checksum (byte-reversed).
"""

from __future__ import annotations

import hashlib
import secrets
from typing import Dict

import ed25519_blake2b

from nano_mcp.core.constants import ADDRESS_ALPHABET, ADDRESS_PREFIXES

_DECODE_MAP = {char: index for index, char in enumerate(ADDRESS_ALPHABET)}
_KEY_CHARS = 52
_CHECKSUM_CHARS = 8


def _encode_base32(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        chars.append(ADDRESS_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def _decode_base32(text: str) -> int:
    value = 0
    for char in text:
        if char not in _DECODE_MAP:
            raise ValueError(f"Invalid address character: {char!r}")
        value = (value << 5) | _DECODE_MAP[char]
    return value


def _checksum(public_key: bytes) -> bytes:
    return hashlib.blake2b(public_key, digest_size=5).digest()[::-1]


def normalize_address(address: str) -> str:
    """Rewrite legacy ``xrb_`` addresses to the ``nano_`` prefix."""
    address = address.strip()
    if address.startswith("xrb_"):
        return "nano_" + address[len("xrb_"):]
    return address


def address_from_public_key(public_key: str | bytes, prefix: str = "nano_") -> str:
    """Encode a 32-byte public key (bytes or hex) as an account address."""
    key = bytes.fromhex(public_key) if isinstance(public_key, str) else public_key
    if len(key) != 32:
        raise ValueError("Public key must be 32 bytes")
    body = _encode_base32(int.from_bytes(key, "big"), _KEY_CHARS)
    check = _encode_base32(int.from_bytes(_checksum(key), "big"), _CHECKSUM_CHARS)
    return f"{prefix}{body}{check}"


def public_key_from_address(address: str) -> str:
    """
    Decode an account address into its uppercase hex public key.

    Raises:
        ValueError: If the prefix, length, alphabet or checksum is wrong
    """
    address = normalize_address(address)
    prefix = next((p for p in ADDRESS_PREFIXES if address.startswith(p)), None)
    if prefix is None:
        raise ValueError("Address must start with nano_ or xrb_")

    body = address[len(prefix):]
    if len(body) != _KEY_CHARS + _CHECKSUM_CHARS:
        raise ValueError("Address has the wrong length")

    key_value = _decode_base32(body[:_KEY_CHARS])
    if key_value >> 256:
        raise ValueError("Address encodes more than 256 bits")
    key = key_value.to_bytes(32, "big")

    expected = _decode_base32(body[_KEY_CHARS:]).to_bytes(5, "big")
    if expected != _checksum(key):
        raise ValueError("Address checksum mismatch")
    return key.hex().upper()


def public_key_from_private_key(private_key: str) -> str:
    """Derive the uppercase hex public key for a hex private key."""
    signing_key = ed25519_blake2b.SigningKey(bytes.fromhex(private_key))
    return signing_key.get_verifying_key().to_bytes().hex().upper()


def address_from_private_key(private_key: str) -> str:
    return address_from_public_key(public_key_from_private_key(private_key))


def private_key_from_seed(seed: str, index: int = 0) -> str:
    """Derive the private key at ``index`` from a 32-byte hex seed."""
    if index < 0 or index >= 2**32:
        raise ValueError("Account index must fit in 32 bits")
    material = bytes.fromhex(seed) + index.to_bytes(4, "big")
    return hashlib.blake2b(material, digest_size=32).hexdigest().upper()


def generate_account(seed: str | None = None, index: int = 0) -> Dict[str, str]:
    """Create a new account, returning seed, keys and address."""
    seed = seed or secrets.token_hex(32).upper()
    private_key = private_key_from_seed(seed, index)
    public_key = public_key_from_private_key(private_key)
    return {
        "seed": seed,
        "private_key": private_key,
        "public_key": public_key,
        "address": address_from_public_key(public_key),
    }
