import io
import sys
import tempfile
import time
import unittest
from datetime import date
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx
from PIL import Image
from reportlab.pdfgen import canvas

from invoice_bridge.backends.invoices_calc import calculate_invoice
from invoice_bridge.backends.invoices_errors import RenderError
from invoice_bridge.backends.invoices_render import (
    BOTTOM_LIMIT,
    HEADER_MAX_LINES,
    PAGE_HEIGHT,
    fetch_logo,
    format_date,
    format_money,
    format_rate,
    invoice_sections,
    render_invoice_pdf,
    write_invoice_pdf,
)


def _invoice(**overrides):
    payload = {
        "invoiceNumber": "INV-2025-0001",
        "date": "2025-03-04",
        "business": {
            "name": "Northwind Studio Ltd",
            "address": "1 High Street\nLondon",
            "accountName": "Northwind Studio Ltd",
            "accountNumber": "12345678",
            "sortCode": "12-34-56",
        },
        "customer": {"name": "ACME Ltd", "email": "accounts@acme.example"},
        "items": [
            {"description": "Web development", "quantity": 10, "unitPrice": 75},
            {"description": "Logo design", "quantity": 5, "unitPrice": 60},
        ],
        "vatRate": 0.2,
        "notes": "Thank you for your business.",
        "terms": "Payment due within 30 days of invoice date",
    }
    payload.update(overrides)
    return calculate_invoice(payload)


def _render_recording_baselines(invoice):
    """Render and return the bytes plus every (y, text) handed to the canvas."""

    drawn = []

    def recorder(original):
        def record(self, x, y, text, *args, **kwargs):
            drawn.append((y, text))
            return original(self, x, y, text, *args, **kwargs)

        return record

    with patch.object(
        canvas.Canvas, "drawString", recorder(canvas.Canvas.drawString)
    ), patch.object(
        canvas.Canvas, "drawRightString", recorder(canvas.Canvas.drawRightString)
    ):
        data = render_invoice_pdf(invoice)
    return data, drawn


def _png_bytes(size=(40, 20)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


class FormattingTests(unittest.TestCase):
    def test_money_uses_currency_prefix_and_two_places(self):
        self.assertEqual(format_money(Decimal("1260"), "GBP"), "GBP 1,260.00")
        self.assertEqual(format_money(Decimal("0.005"), "EUR"), "EUR 0.01")

    def test_rate_is_shown_as_percentage(self):
        self.assertEqual(format_rate(Decimal("0.2")), "20%")
        self.assertEqual(format_rate(Decimal("0.175")), "17.5%")

    def test_date_styles(self):
        self.assertEqual(format_date(date(2024, 3, 5), "iso"), "2024-03-05")
        self.assertEqual(format_date(date(2024, 3, 5), "long"), "5 March 2024")
        with self.assertRaises(ValueError):
            format_date(date(2024, 3, 5), "us")

    def test_sections_hold_every_monetary_line_with_currency(self):
        sections = invoice_sections(_invoice())

        self.assertEqual(
            sections["ITEM_ROWS"][0],
            ("Web development", "10", "GBP 75.00", "GBP 750.00"),
        )
        self.assertEqual(
            sections["TOTALS"],
            [
                ("Subtotal", "GBP 1,050.00"),
                ("VAT (20%)", "GBP 210.00"),
                ("Total", "GBP 1,260.00"),
            ],
        )
        self.assertEqual(sections["BILL_TO"], ["accounts@acme.example"])
        self.assertEqual(len(sections["BANK"]), 3)

    def test_optional_blocks_are_omitted(self):
        invoice = _invoice(
            business={"name": "Northwind"},
            notes=None,
            terms=None,
        )

        sections = invoice_sections(invoice)

        self.assertIsNone(sections["NOTES"])
        self.assertIsNone(sections["TERMS"])
        self.assertEqual(sections["BANK"], [])
        self.assertEqual(sections["LETTERHEAD"], [])


class RenderInvoicePdfTests(unittest.TestCase):
    def test_renders_pdf_with_currency_prefixed_totals(self):
        data = render_invoice_pdf(_invoice())

        self.assertTrue(data.startswith(b"%PDF-"))
        self.assertIn(b"GBP 1,260.00", data)
        self.assertIn(b"GBP 210.00", data)
        self.assertIn(b"INV-2025-0001", data)
        self.assertIn(b"Page 1 of 1", data)

    def test_rendering_is_byte_identical(self):
        invoice = _invoice()
        self.assertEqual(render_invoice_pdf(invoice), render_invoice_pdf(invoice))

    def test_rendering_with_logo_is_byte_identical(self):
        invoice = _invoice()
        logo = _png_bytes()

        with_logo = render_invoice_pdf(invoice, logo=logo)

        self.assertEqual(with_logo, render_invoice_pdf(invoice, logo=logo))
        self.assertNotEqual(with_logo, render_invoice_pdf(invoice))

    def test_long_date_style_is_rendered(self):
        data = render_invoice_pdf(_invoice(dateStyle="long"))
        self.assertIn(b"4 March 2025", data)

    def test_many_items_paginate(self):
        items = [
            {"description": f"Consulting session {n}", "quantity": 1, "unitPrice": 100}
            for n in range(1, 81)
        ]

        data = render_invoice_pdf(_invoice(items=items))

        self.assertIn(b"Page 2 of", data)
        self.assertIn(b"Consulting session 80", data)
        self.assertIn(b"GBP 9,600.00", data)

    def test_long_descriptions_wrap(self):
        description = "Discovery workshop " * 20
        data = render_invoice_pdf(
            _invoice(items=[{"description": description, "quantity": 1, "unitPrice": 10}])
        )
        self.assertIn(b"GBP 12.00", data)

    def test_long_notes_continue_on_new_pages_inside_margins(self):
        notes = "\n".join(f"Note line {n}" for n in range(1, 121))

        data, drawn = _render_recording_baselines(_invoice(notes=notes))

        self.assertIn(b"Page 3 of", data)
        texts = [text for _, text in drawn]
        self.assertIn("Note line 1", texts)
        self.assertIn("Note line 120", texts)
        self.assertIn("Sort code: 12-34-56", texts)
        for y, text in drawn:
            self.assertGreaterEqual(y, BOTTOM_LIMIT, text)
            self.assertLessEqual(y, PAGE_HEIGHT, text)

    def test_tall_header_and_many_items_stay_on_the_page(self):
        address = "\n".join(f"Unit {n}, Riverside Industrial Estate, Long Road" for n in range(1, 9))
        items = [
            {"description": f"Support block {n}", "quantity": 1, "unitPrice": 50}
            for n in range(1, 41)
        ]
        invoice = _invoice(
            business={"name": "Northwind Studio Ltd", "address": address, "email": "a@b.example"},
            customer={"name": "ACME Ltd", "address": address, "email": "accounts@acme.example"},
            items=items,
            notes="Thank you. " * 150,
        )

        data, drawn = _render_recording_baselines(invoice)

        sections = invoice_sections(invoice)
        self.assertLessEqual(len(sections["LETTERHEAD"]), HEADER_MAX_LINES)
        self.assertLessEqual(len(sections["BILL_TO"]), HEADER_MAX_LINES)
        texts = [text for _, text in drawn]
        self.assertIn("Support block 40", texts)
        self.assertIn("GBP 2,400.00", texts)
        for y, text in drawn:
            self.assertGreaterEqual(y, BOTTOM_LIMIT, text)
        self.assertTrue(data.startswith(b"%PDF-"))

    def test_invalid_logo_raises_render_error(self):
        with self.assertRaises(RenderError):
            render_invoice_pdf(_invoice(), logo=b"definitely not an image")

    def test_write_invoice_pdf_creates_parent_directories(self):
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / "nested" / "out" / "invoice.pdf"

            written = write_invoice_pdf(_invoice(), target)

            self.assertEqual(written, target)
            self.assertTrue(target.read_bytes().startswith(b"%PDF-"))
            self.assertEqual(sorted(p.name for p in target.parent.iterdir()), ["invoice.pdf"])

    def test_failed_render_leaves_no_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / "invoice.pdf"

            with self.assertRaises(RenderError):
                write_invoice_pdf(_invoice(), target, logo=b"junk")

            self.assertFalse(target.exists())


class FetchLogoTests(unittest.TestCase):
    def _fetch(self, handler, **kwargs):
        options = {"timeout": 1.0, "max_bytes": 1024 * 1024}
        options.update(kwargs)
        return fetch_logo(
            "https://cdn.example/logo.png",
            transport=httpx.MockTransport(handler),
            **options,
        )

    def test_returns_image_bytes(self):
        logo = _png_bytes()
        self.assertEqual(self._fetch(lambda request: httpx.Response(200, content=logo)), logo)

    def test_unreachable_url_returns_none(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        self.assertIsNone(self._fetch(handler))

    def test_timeout_returns_none(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        self.assertIsNone(self._fetch(handler))

    def test_http_error_status_returns_none(self):
        self.assertIsNone(self._fetch(lambda request: httpx.Response(404)))

    def test_non_image_payload_returns_none(self):
        response = httpx.Response(200, content=b"<html>not found</html>")
        self.assertIsNone(self._fetch(lambda request: response))

    def test_oversized_payload_returns_none(self):
        logo = _png_bytes(size=(400, 400))
        handler = lambda request: httpx.Response(200, content=logo)
        self.assertIsNone(self._fetch(handler, max_bytes=64))

    def test_slow_drip_is_cut_off_at_the_overall_deadline(self):
        logo = _png_bytes()

        def drip():
            for byte in logo:
                time.sleep(0.05)
                yield bytes([byte])

        started = time.monotonic()
        result = self._fetch(lambda request: httpx.Response(200, content=drip()), timeout=0.3)

        self.assertIsNone(result)
        self.assertLess(time.monotonic() - started, 2.0)


__all__ = ["FetchLogoTests", "FormattingTests", "RenderInvoicePdfTests"]
