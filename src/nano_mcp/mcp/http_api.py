"""
HTTP binding for the Nano MCP server.

Routes:
- POST /         JSON-RPC 2.0 requests
- GET  /health   Liveness and work cache summary
- GET  /metrics  Prometheus metrics
"""

from __future__ import annotations

import logging
from typing import Optional

from flask import Flask, Response, jsonify, request
from prometheus_client import CONTENT_TYPE_LATEST

from nano_mcp import __version__
from nano_mcp.core.metrics import NanoMetrics, default_metrics

logger = logging.getLogger(__name__)


def create_app(server, metrics: Optional[NanoMetrics] = None) -> Flask:
    """
    Create the Flask application for ``server``.

    Args:
        server: NanoMCPServer handling JSON-RPC requests
        metrics: Metrics to export, the process-wide collectors by default
    """
    app = Flask(__name__)
    metrics = metrics or default_metrics()

    @app.route("/", methods=["POST"])
    def jsonrpc() -> Response:
        payload = request.get_json(silent=True)
        if payload is None:
            return jsonify({
                "jsonrpc": "2.0",
                "error": {"code": -32700, "message": "Parse error"},
                "id": None,
            })
        if isinstance(payload, list):
            if not payload:
                return jsonify({
                    "jsonrpc": "2.0",
                    "error": {"code": -32600, "message": "Invalid Request"},
                    "id": None,
                })
            return jsonify([server.handle_request(item) for item in payload])
        return jsonify(server.handle_request(payload))

    @app.route("/health", methods=["GET"])
    def health() -> Response:
        stats = server.work_cache.stats()
        return jsonify({
            "status": "ok",
            "version": __version__,
            "workCache": {"size": stats["size"], "hitRate": stats["hit_rate"]},
        })

    @app.route("/metrics", methods=["GET"])
    def metrics_handler() -> Response:
        return Response(metrics.export(), mimetype=CONTENT_TYPE_LATEST)

    return app
