"""Tool registration for invoice-bridge."""
from __future__ import annotations

import logging

from mcp.server.fastmcp import FastMCP

from invoice_bridge.backends import invoices


def register_tools(server: FastMCP) -> list[str]:
    """Register built-in backends on the MCP server."""

    loaded: list[str] = []
    try:
        invoices.register(server)
        loaded.append("invoice_bridge.backends.invoices")
    except Exception:  # pragma: no cover - registration failure is logged, server still starts
        logging.getLogger("invoice_bridge.api.tools").exception(
            "backend.import_error", extra={"module": "invoices"}
        )
    return loaded


__all__ = ["register_tools"]
