"""MCP server and HTTP application wiring."""
from __future__ import annotations

from mcp.server.fastmcp import FastMCP
from starlette.applications import Starlette

from invoice_bridge.api import make_routes, register_tools
from invoice_bridge.api.routes import ContextFactory

MCP_SERVER = FastMCP("invoice-bridge")
LOADED_BACKENDS = register_tools(MCP_SERVER)


def build_api_app(context_factory: ContextFactory | None = None) -> Starlette:
    """Starlette app serving stored PDFs and the invoice registry."""

    return Starlette(routes=make_routes(context_factory))


__all__ = ["LOADED_BACKENDS", "MCP_SERVER", "build_api_app"]
