import asyncio
import sys
import unittest
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mcp.server.fastmcp import FastMCP

from invoice_bridge.api import register_tools
from invoice_bridge.backends.invoices import invoice_template
from invoice_bridge.backends.invoices_calc import calculate_invoice


class RegisterToolsTests(unittest.TestCase):
    def test_registers_invoice_tools(self):
        server = FastMCP("invoice-bridge-test")

        loaded = register_tools(server)
        tools = asyncio.run(server.list_tools())

        self.assertEqual(loaded, ["invoice_bridge.backends.invoices"])
        self.assertEqual(
            sorted(tool.name for tool in tools),
            [
                "calculate_invoice_totals",
                "delete_invoice",
                "generate_invoice_pdf",
                "get_invoice",
                "get_invoice_template",
                "list_invoices",
                "update_invoice_status",
            ],
        )

    def test_template_is_a_valid_invoice(self):
        invoice = calculate_invoice(invoice_template())

        self.assertEqual(invoice.invoice_number, "INV-2025-0001")
        self.assertEqual(invoice.total, Decimal("1260"))


__all__ = ["RegisterToolsTests"]
