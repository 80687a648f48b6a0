"""
Nano MCP Server

JSON-RPC 2.0 interface for AI agents to hold and move XNO.

Methods provided:
- initialize: Server version and capabilities
- generateWallet: Create a new account
- getBalance: Balance and pending amount for an address
- getAccountInfo: Frontier, balance and representative
- getPendingBlocks: Receivable blocks for an address
- initializeAccount: Open an account by receiving its first pending block
- sendTransaction: Send raw units to another address
- receiveAllPending: Receive every pending block for an address
- convertBalance: Convert between raw and XNO
- getWorkCacheStats: Proof-of-work cache statistics

Usage:
    nano-mcp --port 8080
    nano-mcp --stdio
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Callable, Dict, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from nano_mcp import __version__
from nano_mcp.core.config import NanoConfig
from nano_mcp.core.exceptions import NanoError, ValidationError, get_error_context
from nano_mcp.core.logging_config import setup_logging_from_config
from nano_mcp.core.results import OperationFailure
from nano_mcp.core.transactions import NanoTransactions
from nano_mcp.core.units import parse_raw, raw_to_xno, xno_to_raw
from nano_mcp.core.work_cache import WorkCache
from nano_mcp.mcp.schemas import (
    AddressParams,
    ConvertBalanceParams,
    KeyedAddressParams,
    SendTransactionParams,
    ToolCallParams,
)
from nano_mcp.rpc.http_client import NodeTransport

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
NODE_ERROR = -32000


class JSONRPCError(Exception):
    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class NanoMCPServer:
    """
    MCP server for Nano wallet operations.

    Dispatches JSON-RPC requests to the transaction service.
    """

    def __init__(self, transactions: NanoTransactions, work_cache: WorkCache):
        self.transactions = transactions
        self.work_cache = work_cache
        self._methods: Dict[str, tuple[str, Optional[Type[BaseModel]], Callable[..., Any]]] = {
            "initialize": ("Server version and capabilities", None, self._initialize),
            "generateWallet": ("Generate a new Nano wallet (seed, keys and address)", None,
                               self._generate_wallet),
            "getBalance": ("Get the balance and pending amount for an address", AddressParams,
                           self._get_balance),
            "getAccountInfo": ("Get frontier, balance and representative for an address",
                               AddressParams, self._get_account_info),
            "getPendingBlocks": ("List receivable blocks for an address", AddressParams,
                                 self._get_pending_blocks),
            "initializeAccount": ("Open an account by receiving its first pending block",
                                  KeyedAddressParams, self._initialize_account),
            "sendTransaction": ("Send raw units to another address. Pending blocks are received first.",
                                SendTransactionParams, self._send_transaction),
            "receiveAllPending": ("Receive every pending block for an address", KeyedAddressParams,
                                  self._receive_all_pending),
            "convertBalance": ("Convert an amount between raw and XNO", ConvertBalanceParams,
                               self._convert_balance),
            "getWorkCacheStats": ("Proof-of-work cache statistics", None, self._get_work_cache_stats),
        }

    def get_tools(self) -> list[dict[str, Any]]:
        """Return list of available MCP tools."""
        tools = []
        for name, (description, schema, _) in self._methods.items():
            if schema is None:
                input_schema: Dict[str, Any] = {"type": "object", "properties": {}}
            else:
                input_schema = schema.model_json_schema(by_alias=True)
            tools.append({"name": name, "description": description, "inputSchema": input_schema})
        return tools

    # ==================== Dispatch ====================

    def call_method(self, method: str, params: Optional[Dict[str, Any]]) -> Any:
        """
        Validate ``params`` and run ``method``.

        Raises:
            JSONRPCError: For unknown methods, invalid parameters or node failures
        """
        if method == "tools/list":
            return {"tools": self.get_tools()}
        if method == "tools/call":
            return self.call_tool(params or {})

        entry = self._methods.get(method)
        if entry is None:
            raise JSONRPCError(METHOD_NOT_FOUND, f"Method not found: {method}")
        _, schema, handler = entry

        if params is not None and not isinstance(params, dict):
            raise JSONRPCError(INVALID_PARAMS, "params must be an object")
        try:
            if schema is None:
                return handler()
            return handler(schema.model_validate(params or {}))
        except SchemaError as e:
            raise JSONRPCError(
                INVALID_PARAMS,
                "Invalid params",
                [
                    {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                    for err in e.errors()
                ],
            ) from e
        except ValidationError as e:
            raise JSONRPCError(INVALID_PARAMS, e.message, e.details) from e
        except NanoError as e:
            logger.warning(
                f"Method {method} failed: {e}",
                extra={"event": "mcp.node_error", "method": method},
            )
            raise JSONRPCError(NODE_ERROR, e.message, get_error_context(e)) from e

    def call_tool(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Execute an MCP ``tools/call`` request and wrap the result as text content."""
        try:
            call = ToolCallParams.model_validate(params)
        except SchemaError as e:
            raise JSONRPCError(INVALID_PARAMS, "Invalid tool call", str(e)) from e
        if call.name in ("tools/list", "tools/call"):
            raise JSONRPCError(METHOD_NOT_FOUND, f"Unknown tool: {call.name}")

        try:
            result = self.call_method(call.name, call.arguments)
        except JSONRPCError as e:
            if e.code == METHOD_NOT_FOUND:
                raise
            payload: Any = {"error": e.message, "code": e.code, "data": e.data}
            return {"content": [{"type": "text", "text": json.dumps(payload, indent=2)}], "isError": True}

        is_error = isinstance(result, dict) and result.get("success") is False
        return {"content": [{"type": "text", "text": json.dumps(result, indent=2)}], "isError": is_error}

    def handle_request(self, request: Any) -> Dict[str, Any]:
        """Handle one JSON-RPC 2.0 request object and return the response object."""
        request_id = request.get("id") if isinstance(request, dict) else None
        try:
            if (
                not isinstance(request, dict)
                or request.get("jsonrpc", "2.0") != "2.0"
                or not isinstance(request.get("method"), str)
            ):
                raise JSONRPCError(INVALID_REQUEST, "Invalid Request")
            result = self.call_method(request["method"], request.get("params"))
            return {"jsonrpc": "2.0", "result": result, "id": request_id}
        except JSONRPCError as e:
            error: Dict[str, Any] = {"code": e.code, "message": e.message}
            if e.data is not None:
                error["data"] = e.data
            return {"jsonrpc": "2.0", "error": error, "id": request_id}
        except Exception as e:
            logger.exception(f"Request failed: {request.get('method')}")
            return {
                "jsonrpc": "2.0",
                "error": {"code": INTERNAL_ERROR, "message": f"Internal error: {type(e).__name__}"},
                "id": request_id,
            }

    # ==================== Methods ====================

    @staticmethod
    def _result(outcome: Any) -> Any:
        if isinstance(outcome, OperationFailure):
            return outcome.to_dict()
        if hasattr(outcome, "to_dict"):
            return outcome.to_dict()
        return outcome

    def _initialize(self) -> Dict[str, Any]:
        return {
            "version": __version__,
            "capabilities": {"methods": list(self._methods), "tools": True},
        }

    def _generate_wallet(self) -> Dict[str, Any]:
        return self.transactions.generate_wallet()

    def _get_balance(self, params: AddressParams) -> Dict[str, Any]:
        return self.transactions.get_balance(params.address)

    def _get_account_info(self, params: AddressParams) -> Dict[str, Any]:
        return self.transactions.get_account_info(params.address).to_dict()

    def _get_pending_blocks(self, params: AddressParams) -> Dict[str, Any]:
        pending = self.transactions.get_pending_blocks(params.address)
        return {
            "address": params.address,
            "count": len(pending),
            "blocks": [block.to_dict() for block in pending],
        }

    def _initialize_account(self, params: KeyedAddressParams) -> Any:
        return self._result(self.transactions.initialize_account(params.address, params.privateKey))

    def _send_transaction(self, params: SendTransactionParams) -> Any:
        return self._result(
            self.transactions.send_transaction(
                params.fromAddress, params.privateKey, params.toAddress, params.amountRaw
            )
        )

    def _receive_all_pending(self, params: KeyedAddressParams) -> Any:
        return self._result(self.transactions.receive_all_pending(params.address, params.privateKey))

    def _convert_balance(self, params: ConvertBalanceParams) -> Dict[str, str]:
        try:
            if params.from_unit == "raw":
                raw = str(parse_raw(params.amount))
            else:
                raw = xno_to_raw(params.amount)
            xno = raw_to_xno(raw)
        except ValueError as e:
            raise JSONRPCError(INVALID_PARAMS, str(e), {"field": "amount"}) from e
        return {
            "raw": raw,
            "xno": xno,
            "result": raw if params.to_unit == "raw" else xno,
            "unit": params.to_unit,
        }

    def _get_work_cache_stats(self) -> Dict[str, Any]:
        return self.work_cache.stats()


def create_mcp_server(
    config: Optional[NanoConfig] = None,
    transport: Any = None,
    **kwargs: Any,
) -> NanoMCPServer:
    """Wire transport, work cache and transaction service into a server."""
    config = config or NanoConfig.from_env()
    transport = transport or NodeTransport.from_config(config)
    work_cache = WorkCache(
        transport.call,
        ttl=config.work_cache_ttl,
        max_size=config.work_cache_max_size,
        send_timeout=config.send_work_timeout,
        receive_timeout=config.receive_work_timeout,
    )
    transactions = NanoTransactions(transport, work_cache, config=config, **kwargs)
    return NanoMCPServer(transactions, work_cache)


async def run_stdio_server(server: NanoMCPServer, stdin=None, stdout=None) -> None:
    """Run the server over stdio, one JSON request per line."""
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    loop = asyncio.get_running_loop()

    while True:
        try:
            line = await loop.run_in_executor(None, stdin.readline)
            if not line:
                break
            if not line.strip():
                continue

            try:
                request = json.loads(line)
            except json.JSONDecodeError:
                response = {"jsonrpc": "2.0", "error": {"code": PARSE_ERROR, "message": "Parse error"}, "id": None}
            else:
                response = await loop.run_in_executor(None, server.handle_request, request)

            print(json.dumps(response), file=stdout, flush=True)
        except KeyboardInterrupt:
            break


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for MCP server."""
    parser = argparse.ArgumentParser(description="Nano MCP Server")
    parser.add_argument("--host", default=None, help="HTTP bind address (default NANO_MCP_HOST)")
    parser.add_argument("--port", type=int, default=None, help="HTTP port (default NANO_MCP_PORT)")
    parser.add_argument("--stdio", action="store_true", help="Run in stdio mode")
    parser.add_argument(
        "--precompute-interval",
        type=float,
        default=300.0,
        help="Seconds between work cache sweeps, 0 disables the sweeper",
    )
    args = parser.parse_args(argv)

    config = NanoConfig.from_env()
    overrides = {}
    if args.host:
        overrides["mcp_host"] = args.host
    if args.port:
        overrides["mcp_port"] = args.port
    if overrides:
        config = config.with_overrides(**overrides)

    setup_logging_from_config(config, stream=sys.stderr if args.stdio else None)
    server = create_mcp_server(config)
    if args.precompute_interval > 0:
        server.work_cache.start_background_worker(args.precompute_interval)

    try:
        if args.stdio:
            asyncio.run(run_stdio_server(server))
        else:
            from nano_mcp.mcp.http_api import create_app

            app = create_app(server)
            logger.info(
                f"Nano MCP Server listening on {config.mcp_host}:{config.mcp_port}",
                extra={"event": "mcp.started"},
            )
            app.run(host=config.mcp_host, port=config.mcp_port, threaded=True)
    finally:
        server.work_cache.stop_background_worker()
        server.transactions.shutdown()


if __name__ == "__main__":
    main()
