"""Minimal CLI helpers for running the MCP server."""
from __future__ import annotations

import argparse
import logging
import socket
import threading
from typing import Callable

import uvicorn
from starlette.applications import Starlette

from invoice_bridge.utils.config import load_settings

ApiFactory = Callable[[], Starlette]
StartMCP = Callable[[str, int, str], None]
RunStdIO = Callable[[], None]

NETWORK_TRANSPORTS = ("sse", "streamable-http")


def build_parser() -> argparse.ArgumentParser:
    """Create an argument parser for the runtime."""

    parser = argparse.ArgumentParser(description="invoice-bridge server")
    parser.add_argument(
        "--transport",
        type=str,
        default="sse",
        choices=["stdio", *NETWORK_TRANSPORTS],
        help="Transport mechanism to expose (default: sse)",
    )
    parser.add_argument(
        "--mcp-host",
        type=str,
        default="127.0.0.1",
        help="Host for the MCP server",
    )
    parser.add_argument(
        "--mcp-port",
        type=int,
        default=8099,
        help="Port for the MCP server",
    )
    parser.add_argument(
        "--api-host",
        type=str,
        default="127.0.0.1",
        help="Host for the HTTP API serving PDFs and the invoice registry",
    )
    parser.add_argument(
        "--api-port",
        type=int,
        default=8081,
        help="Port for the HTTP API serving PDFs and the invoice registry",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def run(
    args: argparse.Namespace,
    *,
    logger: logging.Logger,
    start_mcp: StartMCP,
    run_stdio: RunStdIO,
    api_factory: ApiFactory,
) -> None:
    """Execute the CLI behaviour shared by the module and console entry points."""

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)

    try:
        settings = load_settings()
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        raise SystemExit(2)

    logger.info(
        "Starting MCP server (transport=%s, mcp=%s:%s, api=%s:%s, storage=%s, writes=%s)",
        args.transport,
        args.mcp_host,
        args.mcp_port,
        args.api_host,
        args.api_port,
        settings.storage,
        "enabled" if settings.enable_writes else "disabled",
    )

    def _validate_port(value: int, *, flag: str) -> None:
        if value <= 0 or value > 65535:
            logger.error("Invalid %s: %s (must be between 1 and 65535)", flag, value)
            raise SystemExit(2)

    def _check_port_available(host: str, port: int, *, label: str, flag: str) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((host, port))
            except OSError as exc:  # pragma: no cover - depends on local env
                hint = f"Use {flag} to pick a free port."
                logger.error(
                    "%s port %s is unavailable on %s: %s. %s",
                    label,
                    port,
                    host,
                    exc.strerror or exc,
                    hint,
                )
                raise SystemExit(1)

    _validate_port(args.mcp_port, flag="--mcp-port")
    _validate_port(args.api_port, flag="--api-port")

    if not settings.enable_writes:
        logger.warning(
            "Write-capable tools disabled (set MCP_ENABLE_WRITES=1 to enable writes)."
        )

    if args.transport not in NETWORK_TRANSPORTS:
        logger.debug("Transport: stdio")
        logger.debug("HTTP API disabled in stdio mode.")
        run_stdio()
        return

    if args.mcp_host == args.api_host and args.mcp_port == args.api_port:
        logger.error(
            "API port conflicts with MCP port (%s:%s). Use --api-port to separate them.",
            args.api_host,
            args.api_port,
        )
        raise SystemExit(2)

    _check_port_available(args.mcp_host, args.mcp_port, label="MCP", flag="--mcp-port")
    _check_port_available(args.api_host, args.api_port, label="HTTP API", flag="--api-port")

    logger.debug("Transport: %s", args.transport)
    logger.debug("MCP server listening on http://%s:%s", args.mcp_host, args.mcp_port)

    thread = threading.Thread(
        target=start_mcp,
        args=(args.mcp_host, args.mcp_port, args.transport),
        daemon=True,
    )
    thread.start()

    app = api_factory()
    logger.debug("HTTP API on http://%s:%s", args.api_host, args.api_port)
    try:
        uvicorn.run(app, host=args.api_host, port=int(args.api_port))
    except OSError as exc:  # pragma: no cover - depends on local env
        logger.error(
            "Failed to start HTTP API on %s:%s: %s",
            args.api_host,
            args.api_port,
            exc.strerror or exc,
        )
        raise SystemExit(1)


__all__ = ["build_parser", "run"]
