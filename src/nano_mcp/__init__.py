"""
nano-mcp - Nano (XNO) wallet operations for AI agents

Main Components:
- Core: Account primitives, block signing, proof-of-work cache and the
  send/receive orchestrators
- RPC: Node transport with multi-node failover
- MCP: JSON-RPC 2.0 server over HTTP or stdio
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
