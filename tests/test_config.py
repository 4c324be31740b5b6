import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from invoice_bridge.utils.config import (
    DEFAULT_TERMS,
    INVOICE_ROOT_NAME,
    get_invoice_root,
    load_settings,
)

_CLEARED = {
    name: ""
    for name in (
        "INVOICE_ROOT",
        "INVOICE_STORAGE",
        "INVOICE_PUBLIC_BASE_URL",
        "INVOICE_LOGO_URL",
        "INVOICE_LOGO_TIMEOUT",
        "INVOICE_BUSINESS_NAME",
        "INVOICE_DEFAULT_CURRENCY",
        "INVOICE_DEFAULT_TERMS",
        "MCP_ENABLE_WRITES",
        "MCP_AUDIT_LOG",
    )
}


class SettingsTests(unittest.TestCase):
    def test_defaults(self):
        with patch.dict(os.environ, _CLEARED):
            settings = load_settings()

        self.assertEqual(settings.storage, "local")
        self.assertEqual(settings.root.name, INVOICE_ROOT_NAME)
        self.assertEqual(settings.default_currency, "GBP")
        self.assertEqual(settings.default_terms, DEFAULT_TERMS)
        self.assertTrue(settings.enable_writes)
        self.assertIsNone(settings.public_base_url)
        self.assertEqual(settings.logo_timeout, 5.0)

    def test_environment_overrides(self):
        with tempfile.TemporaryDirectory() as tmp:
            env = {
                **_CLEARED,
                "INVOICE_ROOT": tmp,
                "INVOICE_PUBLIC_BASE_URL": "https://invoices.example/",
                "INVOICE_BUSINESS_NAME": "Northwind",
                "INVOICE_LOGO_URL": "https://cdn.example/logo.png",
                "INVOICE_LOGO_TIMEOUT": "not-a-number",
                "INVOICE_DEFAULT_CURRENCY": "eur",
                "MCP_ENABLE_WRITES": "0",
                "MCP_AUDIT_LOG": str(Path(tmp) / "audit.jsonl"),
            }
            with patch.dict(os.environ, env):
                settings = load_settings()

            self.assertEqual(settings.root, Path(tmp).resolve())

        self.assertEqual(settings.public_base_url, "https://invoices.example")
        self.assertEqual(settings.default_currency, "EUR")
        self.assertEqual(settings.logo_timeout, 5.0)
        self.assertFalse(settings.enable_writes)
        self.assertEqual(settings.audit_log_path.name, "audit.jsonl")
        self.assertEqual(
            settings.business_defaults(),
            {"name": "Northwind", "logoUrl": "https://cdn.example/logo.png"},
        )

    def test_unknown_storage_is_rejected(self):
        with patch.dict(os.environ, {**_CLEARED, "INVOICE_STORAGE": "ftp"}):
            with self.assertRaises(ValueError):
                load_settings()

    def test_root_from_base_path(self):
        with patch.dict(os.environ, {"INVOICE_ROOT": ""}):
            root = get_invoice_root(Path("/srv/app"))
        self.assertEqual(root, Path("/srv/app/.invoice_bridge").resolve())


__all__ = ["SettingsTests"]
