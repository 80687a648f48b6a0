"""
Nano MCP Server

JSON-RPC interface for AI agent interaction with the Nano network.
"""

from nano_mcp.mcp.server import NanoMCPServer, create_mcp_server

__all__ = ["NanoMCPServer", "create_mcp_server"]
