"""
nano-mcp core

Domain logic for Nano wallets: unit conversion, addresses, state block
signing, the proof-of-work cache and the transaction orchestrators.
"""

__all__ = []
