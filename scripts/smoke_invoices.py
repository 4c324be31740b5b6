#!/usr/bin/env python3
"""
Lightweight smoke test for invoice-bridge.

Generates a sample invoice under a temp INVOICE_ROOT with local storage and
prints the resulting locator and registry path.
"""
from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from invoice_bridge.backends.invoices import (
    GenerationContext,
    generate_invoice_pdf_impl,
    invoice_template,
)
from invoice_bridge.utils.config import load_settings


def main() -> None:
    # Isolate into a temp directory unless INVOICE_ROOT is already set
    if "INVOICE_ROOT" not in os.environ:
        os.environ["INVOICE_ROOT"] = tempfile.mkdtemp(prefix="invoice-bridge-smoke-")
    os.environ.setdefault("INVOICE_STORAGE", "local")

    settings = load_settings()
    context = GenerationContext.from_settings(settings)

    request = invoice_template()
    request.pop("invoiceNumber")
    result = generate_invoice_pdf_impl(request, context=context)

    print(f"[smoke] INVOICE_ROOT={settings.root}")
    print(f"[smoke] Invoice: {result['invoiceNumber']} ({result['total']})")
    print(f"[smoke] index.json: {settings.root / 'index.json'}")
    print(f"[smoke] PDF:   {result['locator']}")
    print("[smoke] Done.")


if __name__ == "__main__":  # pragma: no cover
    main()
