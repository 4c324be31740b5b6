"""JSON index of generated invoices and the yearly invoice-number sequence."""
from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Iterator, Optional

import portalocker
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..utils.files import write_bytes_atomic
from .invoices_models import InvoiceStatus

INDEX_FILENAME = "index.json"
SEQUENCE_FILENAME = "sequence.json"
LOCK_FILENAME = ".index.lock"
LOCK_TIMEOUT = 5


class InvoiceRecord(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    invoice_number: str
    filename: str
    locator: str
    created_at: datetime
    total: str
    currency: str
    client_name: str
    status: InvoiceStatus = "generated"

    def to_payload(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)


def _read_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _write_json(path: Path, payload: dict) -> None:
    # lock-free readers must never see a truncated file
    text = json.dumps(payload, indent=2, sort_keys=True) + "\n"
    write_bytes_atomic(path, text.encode("utf-8"))


class InvoiceRegistry:
    """Tracks generated invoices across requests.

    Every read-modify-write of the index or the sequence happens under an
    exclusive file lock, so concurrent requests (or processes) sharing a root
    do not lose updates. Reads take no lock; each write replaces the file
    atomically, so a reader sees either the old or the new index.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.index_path = self.root / INDEX_FILENAME
        self.sequence_path = self.root / SEQUENCE_FILENAME

    @contextmanager
    def locked(self) -> Iterator[Path]:
        self.root.mkdir(parents=True, exist_ok=True)
        lock_file = self.root / LOCK_FILENAME
        lock_file.touch(exist_ok=True)
        with portalocker.Lock(
            lock_file, mode="a", timeout=LOCK_TIMEOUT, flags=portalocker.LOCK_EX
        ):
            yield lock_file

    def _load(self) -> list[InvoiceRecord]:
        try:
            payload = _read_json(self.index_path)
        except FileNotFoundError:
            return []
        return [InvoiceRecord.model_validate(entry) for entry in payload.get("invoices", [])]

    def _save(self, records: list[InvoiceRecord]) -> None:
        records = sorted(records, key=lambda record: record.invoice_number)
        _write_json(
            self.index_path,
            {"count": len(records), "invoices": [r.to_payload() for r in records]},
        )

    def all(self) -> list[InvoiceRecord]:
        return self._load()

    def get(self, invoice_number: str) -> Optional[InvoiceRecord]:
        for record in self._load():
            if record.invoice_number == invoice_number:
                return record
        return None

    def record(self, record: InvoiceRecord) -> InvoiceRecord:
        """Insert ``record``, replacing any entry with the same invoice number."""

        with self.locked():
            records = [r for r in self._load() if r.invoice_number != record.invoice_number]
            records.append(record)
            self._save(records)
        return record

    def update_status(self, invoice_number: str, status: InvoiceStatus) -> InvoiceRecord:
        with self.locked():
            records = self._load()
            for index, record in enumerate(records):
                if record.invoice_number == invoice_number:
                    updated = record.model_copy(update={"status": status})
                    records[index] = updated
                    self._save(records)
                    return updated
        raise KeyError(invoice_number)

    def remove(self, invoice_number: str) -> Optional[InvoiceRecord]:
        with self.locked():
            records = self._load()
            kept = [r for r in records if r.invoice_number != invoice_number]
            if len(kept) == len(records):
                return None
            self._save(kept)
        return next(r for r in records if r.invoice_number == invoice_number)

    def next_invoice_number(
        self, year: int | None = None, prefix: str = "INV", separator: str = "-"
    ) -> str:
        """Return the next number of the per-year counter in sequence.json.

        Format: PREFIX<sep>YYYY<sep>NNNN (4-digit zero-padded counter).
        """

        with self.locked():
            try:
                data = _read_json(self.sequence_path)
            except FileNotFoundError:
                data = {}

            counters: dict[str, int] = data.setdefault("counters", {})
            year_str = str(year or date.today().year)
            next_value = int(counters.get(year_str, 0)) + 1
            counters[year_str] = next_value
            _write_json(self.sequence_path, data)

        parts = [prefix, year_str, f"{next_value:04d}"] if prefix else [year_str, f"{next_value:04d}"]
        return separator.join(parts)


__all__ = ["InvoiceRecord", "InvoiceRegistry"]
