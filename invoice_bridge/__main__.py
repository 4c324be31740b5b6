"""Entry point for python -m invoice_bridge."""
from __future__ import annotations

import logging

from invoice_bridge.utils.logging import configure_root


def main() -> None:
    """Forward to invoice_bridge.cli entry point."""
    # Import here so logging is configured before the backends load
    configure_root()

    from invoice_bridge.app import MCP_SERVER, build_api_app
    from invoice_bridge.cli import build_parser, run

    logger = logging.getLogger("invoice_bridge.cli")

    def _start_mcp(host: str, port: int, transport: str) -> None:
        """Launch the MCP server on a network transport."""
        MCP_SERVER.settings.host = host
        MCP_SERVER.settings.port = int(port)
        MCP_SERVER.run(transport=transport)

    def _run_stdio() -> None:
        """Run stdio transport."""
        MCP_SERVER.run()

    parser = build_parser()
    args = parser.parse_args()

    run(
        args,
        logger=logger,
        start_mcp=_start_mcp,
        run_stdio=_run_stdio,
        api_factory=build_api_app,
    )


if __name__ == "__main__":
    main()
