"""Storage collaborators that keep rendered PDFs and hand back locators."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote

import httpx

from ..utils.config import Settings
from ..utils.files import write_bytes_atomic
from .invoices_errors import StorageError

_LOGGER = logging.getLogger("invoice_bridge.backends.invoices_storage")

FILES_DIRNAME = "files"
PDF_MIME_TYPE = "application/pdf"


class PdfStorage(Protocol):
    """Anything that can keep PDF bytes under a name and return a locator."""

    def store(self, data: bytes, name: str) -> str: ...

    def delete(self, name: str) -> None: ...

    def resolve(self, name: str) -> str: ...


def check_filename(name: str) -> str:
    """Reject names that could escape the storage directory or bucket prefix."""

    if (
        not name
        or not name.endswith(".pdf")
        or name.startswith(".")
        or "/" in name
        or "\\" in name
        or ".." in name
    ):
        raise StorageError(f"Invalid filename: {name!r}")
    return name


class LocalPdfStorage:
    """Keeps PDFs in ``<root>/files``.

    Locators are ``<base_url>/files/<name>`` when a public base URL is
    configured, otherwise the absolute file path.
    """

    def __init__(self, root: Path, base_url: Optional[str] = None):
        self.files_dir = Path(root) / FILES_DIRNAME
        self.base_url = base_url.rstrip("/") if base_url else None

    def path_for(self, name: str) -> Path:
        return self.files_dir / check_filename(name)

    def store(self, data: bytes, name: str) -> str:
        path = self.path_for(name)
        try:
            write_bytes_atomic(path, data)
        except OSError as exc:
            raise StorageError(f"Could not write {path}: {exc.strerror or exc}") from exc
        _LOGGER.debug("storage.local.stored path=%s bytes=%s", path, len(data))
        return self.resolve(name)

    def delete(self, name: str) -> None:
        path = self.path_for(name)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Could not delete {path}: {exc.strerror or exc}") from exc

    def resolve(self, name: str) -> str:
        path = self.path_for(name)
        if self.base_url:
            return f"{self.base_url}/{FILES_DIRNAME}/{quote(path.name)}"
        return str(path.resolve())

    def list_names(self) -> list[str]:
        if not self.files_dir.is_dir():
            return []
        return sorted(
            p.name
            for p in self.files_dir.iterdir()
            if p.is_file() and p.suffix == ".pdf" and not p.name.startswith(".")
        )


class SupabasePdfStorage:
    """Uploads PDFs to a Supabase storage bucket through its REST API."""

    def __init__(
        self,
        url: str,
        key: str,
        bucket: str = "invoices",
        *,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.key = key
        self.bucket = bucket
        self.timeout = timeout
        self._transport = transport

    def _object_url(self, name: str) -> str:
        return f"{self.url}/storage/v1/object/{self.bucket}/{quote(check_filename(name))}"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.key}", "apikey": self.key}

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self._transport)

    def store(self, data: bytes, name: str) -> str:
        headers = {
            **self._headers(),
            "Content-Type": PDF_MIME_TYPE,
            "Cache-Control": "3600",
            "x-upsert": "true",
        }
        try:
            with self._client() as client:
                response = client.post(self._object_url(name), content=data, headers=headers)
        except httpx.HTTPError as exc:
            raise StorageError(f"PDF upload failed: {exc}") from exc

        if response.status_code >= 400:
            message = _error_message(response)
            guidance = ""
            if "bucket not found" in message.lower():
                guidance = f" Verify that the bucket '{self.bucket}' exists and is public."
            raise StorageError(f"PDF upload failed: {message}.{guidance}")

        _LOGGER.debug("storage.supabase.stored bucket=%s name=%s", self.bucket, name)
        return self.resolve(name)

    def delete(self, name: str) -> None:
        try:
            with self._client() as client:
                response = client.delete(self._object_url(name), headers=self._headers())
        except httpx.HTTPError as exc:
            raise StorageError(f"PDF delete failed: {exc}") from exc

        if response.status_code == 404:
            return
        if response.status_code >= 400:
            raise StorageError(f"PDF delete failed: {_error_message(response)}")

    def resolve(self, name: str) -> str:
        return (
            f"{self.url}/storage/v1/object/public/{self.bucket}/"
            f"{quote(check_filename(name))}"
        )


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("message", "error", "msg"):
            if payload.get(key):
                return str(payload[key])
    return f"HTTP {response.status_code}"


def create_storage(
    settings: Settings, *, transport: httpx.BaseTransport | None = None
) -> PdfStorage:
    """Build the storage collaborator selected by ``INVOICE_STORAGE``."""

    if settings.storage == "supabase":
        if not settings.supabase_url or not settings.supabase_key:
            raise StorageError(
                "INVOICE_STORAGE=supabase requires SUPABASE_URL and SUPABASE_KEY"
            )
        return SupabasePdfStorage(
            settings.supabase_url,
            settings.supabase_key,
            settings.supabase_bucket,
            transport=transport,
        )
    return LocalPdfStorage(settings.root, settings.public_base_url)


__all__ = [
    "LocalPdfStorage",
    "PDF_MIME_TYPE",
    "PdfStorage",
    "SupabasePdfStorage",
    "check_filename",
    "create_storage",
]
