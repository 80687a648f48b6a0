"""Nano node RPC transport."""

from nano_mcp.rpc.http_client import NodeTransport, TransportState

__all__ = ["NodeTransport", "TransportState"]
