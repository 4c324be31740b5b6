import json
import sys
import tempfile
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx

from invoice_bridge.backends.invoices_errors import StorageError
from invoice_bridge.backends.invoices_storage import (
    LocalPdfStorage,
    SupabasePdfStorage,
    check_filename,
    create_storage,
)
from invoice_bridge.utils.config import Settings

PDF = b"%PDF-1.4 fake"


class CheckFilenameTests(unittest.TestCase):
    def test_accepts_plain_pdf_names(self):
        self.assertEqual(check_filename("invoice-INV-2025-0001.pdf"), "invoice-INV-2025-0001.pdf")

    def test_rejects_unsafe_names(self):
        for name in ("", "notes.txt", ".hidden.pdf", "../x.pdf", "a/b.pdf", "a\\b.pdf", "a..b.pdf"):
            with self.subTest(name=name):
                with self.assertRaises(StorageError):
                    check_filename(name)


class LocalPdfStorageTests(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tempdir.cleanup)
        self.root = Path(self.tempdir.name)

    def test_store_returns_absolute_path_without_base_url(self):
        storage = LocalPdfStorage(self.root)

        locator = storage.store(PDF, "invoice-1.pdf")

        path = self.root / "files" / "invoice-1.pdf"
        self.assertEqual(locator, str(path.resolve()))
        self.assertEqual(path.read_bytes(), PDF)

    def test_store_returns_url_with_base_url(self):
        storage = LocalPdfStorage(self.root, "https://invoices.example/")

        locator = storage.store(PDF, "invoice-1.pdf")

        self.assertEqual(locator, "https://invoices.example/files/invoice-1.pdf")

    def test_store_overwrites_existing_file(self):
        storage = LocalPdfStorage(self.root)
        storage.store(b"old", "invoice-1.pdf")
        storage.store(PDF, "invoice-1.pdf")

        self.assertEqual(storage.path_for("invoice-1.pdf").read_bytes(), PDF)
        self.assertEqual(storage.list_names(), ["invoice-1.pdf"])

    def test_delete_is_idempotent(self):
        storage = LocalPdfStorage(self.root)
        storage.store(PDF, "invoice-1.pdf")

        storage.delete("invoice-1.pdf")
        storage.delete("invoice-1.pdf")

        self.assertEqual(storage.list_names(), [])

    def test_store_rejects_unsafe_names(self):
        storage = LocalPdfStorage(self.root)
        with self.assertRaises(StorageError):
            storage.store(PDF, "../escape.pdf")
        self.assertFalse((self.root / "escape.pdf").exists())

    def test_write_failure_raises_storage_error(self):
        blocker = self.root / "files"
        blocker.write_text("not a directory", encoding="utf-8")

        with self.assertRaises(StorageError):
            LocalPdfStorage(self.root).store(PDF, "invoice-1.pdf")


class SupabasePdfStorageTests(unittest.TestCase):
    def _storage(self, handler):
        return SupabasePdfStorage(
            "https://project.supabase.co/",
            "service-key",
            "invoices",
            transport=httpx.MockTransport(handler),
        )

    def test_store_uploads_and_returns_public_url(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = request.content
            return httpx.Response(200, json={"Key": "invoices/invoice-1.pdf"})

        locator = self._storage(handler).store(PDF, "invoice-1.pdf")

        self.assertEqual(
            locator,
            "https://project.supabase.co/storage/v1/object/public/invoices/invoice-1.pdf",
        )
        self.assertEqual(seen["method"], "POST")
        self.assertEqual(
            seen["url"], "https://project.supabase.co/storage/v1/object/invoices/invoice-1.pdf"
        )
        self.assertEqual(seen["headers"]["authorization"], "Bearer service-key")
        self.assertEqual(seen["headers"]["content-type"], "application/pdf")
        self.assertEqual(seen["headers"]["x-upsert"], "true")
        self.assertEqual(seen["body"], PDF)

    def test_missing_bucket_is_explained(self):
        handler = lambda request: httpx.Response(
            400, content=json.dumps({"message": "Bucket not found"})
        )

        with self.assertRaises(StorageError) as ctx:
            self._storage(handler).store(PDF, "invoice-1.pdf")

        self.assertIn("Bucket not found", str(ctx.exception))
        self.assertIn("Verify that the bucket 'invoices' exists", str(ctx.exception))

    def test_network_failure_raises_storage_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with self.assertRaises(StorageError):
            self._storage(handler).store(PDF, "invoice-1.pdf")

    def test_delete_tolerates_missing_objects(self):
        self._storage(lambda request: httpx.Response(404)).delete("invoice-1.pdf")

    def test_delete_failure_raises_storage_error(self):
        handler = lambda request: httpx.Response(500, json={"error": "boom"})
        with self.assertRaises(StorageError) as ctx:
            self._storage(handler).delete("invoice-1.pdf")
        self.assertIn("boom", str(ctx.exception))


class CreateStorageTests(unittest.TestCase):
    def test_local_is_default(self):
        with tempfile.TemporaryDirectory() as tmp:
            storage = create_storage(Settings(root=Path(tmp)))
        self.assertIsInstance(storage, LocalPdfStorage)

    def test_supabase_requires_credentials(self):
        with self.assertRaises(StorageError):
            create_storage(Settings(root=Path("."), storage="supabase"))

    def test_supabase_with_credentials(self):
        settings = Settings(
            root=Path("."),
            storage="supabase",
            supabase_url="https://project.supabase.co",
            supabase_key="key",
            supabase_bucket="docs",
        )

        storage = create_storage(settings)

        self.assertIsInstance(storage, SupabasePdfStorage)
        self.assertEqual(storage.bucket, "docs")


__all__ = [
    "CheckFilenameTests",
    "CreateStorageTests",
    "LocalPdfStorageTests",
    "SupabasePdfStorageTests",
]
