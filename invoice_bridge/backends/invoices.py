"""MCP backend for invoice calculation, PDF rendering and delivery."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, Mapping, Optional

import portalocker
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic.alias_generators import to_snake

from ..utils.config import MAX_LIST_LIMIT, Settings, load_settings
from ..utils.logging import record_write_attempt
from .invoices_calc import (
    calculate_invoice,
    check_dates,
    parse_invoice_input,
    round_money,
    summarize_totals,
)
from .invoices_errors import (
    InvoiceValidationError,
    RenderError,
    StorageError,
)
from .invoices_models import Invoice, InvoiceStatus
from .invoices_registry import InvoiceRecord, InvoiceRegistry
from .invoices_render import LogoFetcher, make_logo_fetcher, render_invoice_pdf
from .invoices_storage import PdfStorage, create_storage

_LOGGER = logging.getLogger("invoice_bridge.backends.invoices")

DEFAULT_LIST_LIMIT = 20
PREVIEW_INVOICE_NUMBER = "PREVIEW"


class WritesDisabled(RuntimeError):
    """Raised when write operations are attempted while disabled."""


class InvoiceNotFound(ToolError):
    """Raised when no registry entry carries the requested invoice number."""


def _require_writes_enabled(settings: Settings) -> None:
    if not settings.enable_writes:
        raise WritesDisabled(
            "Write-capable tools are disabled. Set MCP_ENABLE_WRITES=1 to allow writes."
        )


class GenerationState(str, Enum):
    RECEIVED = "received"
    VALIDATING = "validating"
    INVALID = "invalid"
    VALID = "valid"
    RENDERING = "rendering"
    RENDER_FAILED = "render_failed"
    RENDERED = "rendered"
    STORING = "storing"
    STORE_FAILED = "store_failed"
    DELIVERED = "delivered"
    REJECTED = "rejected"


_TRANSITIONS: dict[GenerationState, frozenset[GenerationState]] = {
    GenerationState.RECEIVED: frozenset({GenerationState.VALIDATING}),
    GenerationState.VALIDATING: frozenset({GenerationState.VALID, GenerationState.INVALID}),
    GenerationState.INVALID: frozenset({GenerationState.REJECTED}),
    GenerationState.VALID: frozenset({GenerationState.RENDERING}),
    GenerationState.RENDERING: frozenset(
        {GenerationState.RENDERED, GenerationState.RENDER_FAILED}
    ),
    GenerationState.RENDER_FAILED: frozenset({GenerationState.REJECTED}),
    GenerationState.RENDERED: frozenset({GenerationState.STORING}),
    GenerationState.STORING: frozenset(
        {GenerationState.DELIVERED, GenerationState.STORE_FAILED}
    ),
    GenerationState.STORE_FAILED: frozenset({GenerationState.REJECTED}),
    GenerationState.DELIVERED: frozenset(),
    GenerationState.REJECTED: frozenset(),
}


@dataclass
class GenerationTracker:
    """Lifecycle of a single generation request."""

    state: GenerationState = GenerationState.RECEIVED
    history: list[GenerationState] = field(
        default_factory=lambda: [GenerationState.RECEIVED]
    )

    def advance(self, new_state: GenerationState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal transition {self.state.value} -> {new_state.value}")
        _LOGGER.debug("generation.state %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    def reject(self, failed_state: GenerationState) -> None:
        self.advance(failed_state)
        self.advance(GenerationState.REJECTED)

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]


@dataclass
class GenerationContext:
    """Collaborators and settings for one request; nothing here is shared state."""

    settings: Settings
    storage: PdfStorage
    registry: Optional[InvoiceRegistry] = None
    fetch_logo: Optional[LogoFetcher] = None
    today: Optional[date] = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "GenerationContext":
        settings = settings or load_settings()
        return cls(
            settings=settings,
            storage=create_storage(settings),
            registry=InvoiceRegistry(settings.root),
            fetch_logo=make_logo_fetcher(
                timeout=settings.logo_timeout, max_bytes=settings.logo_max_bytes
            ),
        )


@dataclass(frozen=True)
class GenerationResult:
    invoice_number: str
    client_name: str
    total: Decimal
    currency: str
    due_date: date
    filename: str
    locator: str
    state: GenerationState
    recorded: bool = False

    @property
    def display_total(self) -> str:
        return f"{self.currency} {round_money(self.total):.2f}"

    def message(self) -> str:
        return "\n".join(
            [
                "Invoice generated.",
                f"Invoice: {self.invoice_number}",
                f"Client: {self.client_name}",
                f"Total: {self.display_total}",
                f"Due date: {self.due_date.isoformat()}",
                f"PDF: {self.locator}",
            ]
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "invoiceNumber": self.invoice_number,
            "clientName": self.client_name,
            "total": self.display_total,
            "currency": self.currency,
            "dueDate": self.due_date.isoformat(),
            "filename": self.filename,
            "locator": self.locator,
            "state": self.state.value,
            "recorded": self.recorded,
            "message": self.message(),
        }


def _has_key(payload: Mapping[str, Any], camel_key: str) -> bool:
    return camel_key in payload or to_snake(camel_key) in payload


def apply_defaults(raw: Mapping[str, Any], settings: Settings) -> Dict[str, Any]:
    """Fill business, currency and terms from configuration where the caller left them out."""

    if not isinstance(raw, Mapping):
        return raw
    prepared = dict(raw)

    business = prepared.get("business")
    defaults = settings.business_defaults()
    if business is None:
        prepared["business"] = defaults
    elif isinstance(business, Mapping):
        merged = dict(business)
        for key, value in defaults.items():
            if not _has_key(merged, key):
                merged[key] = value
        prepared["business"] = merged

    if not _has_key(prepared, "currency"):
        prepared["currency"] = settings.default_currency
    if not _has_key(prepared, "terms"):
        prepared["terms"] = settings.default_terms
    return prepared


def _load_logo(invoice: Invoice, context: GenerationContext) -> bytes | None:
    url = invoice.business.logo_url
    if not url:
        return None
    fetcher = context.fetch_logo or make_logo_fetcher(
        timeout=context.settings.logo_timeout,
        max_bytes=context.settings.logo_max_bytes,
    )
    logo = fetcher(url)
    if logo is None:
        _LOGGER.info("logo.omitted invoice=%s url=%s", invoice.invoice_number, url)
    return logo


def build_invoice(raw: Mapping[str, Any], context: GenerationContext) -> Invoice:
    """Validate ``raw`` and compute its totals.

    A number from the registry sequence is taken only once the input itself,
    dates included, has passed validation.
    """

    parsed = parse_invoice_input(apply_defaults(raw, context.settings))
    number = parsed.invoice_number
    if not number and context.registry is not None:
        check_dates(parsed, today=context.today)
        number = context.registry.next_invoice_number(
            year=(context.today or date.today()).year
        )
    return calculate_invoice(parsed, today=context.today, invoice_number=number)


def _record(invoice: Invoice, locator: str, registry: InvoiceRegistry) -> bool:
    record = InvoiceRecord(
        invoice_number=invoice.invoice_number,
        filename=invoice.filename,
        locator=locator,
        created_at=datetime.now(timezone.utc),
        total=str(round_money(invoice.total)),
        currency=invoice.currency,
        client_name=invoice.customer.name,
    )
    try:
        registry.record(record)
    except (OSError, ValueError, portalocker.LockException) as exc:
        _LOGGER.error(
            "registry.record_failed invoice=%s error=%s",
            invoice.invoice_number,
            exc,
            exc_info=True,
        )
        return False
    return True


def generate_invoice(
    raw: Mapping[str, Any], context: GenerationContext
) -> GenerationResult:
    """Run one request through validation, rendering and storage.

    Each stage failure raises its own error type (validation, render, storage)
    and no later stage runs. A failed render never reaches storage.
    """

    tracker = GenerationTracker()

    tracker.advance(GenerationState.VALIDATING)
    try:
        invoice = build_invoice(raw, context)
    except InvoiceValidationError as exc:
        _LOGGER.info("generation.invalid violations=%s", len(exc.violations))
        tracker.reject(GenerationState.INVALID)
        raise
    tracker.advance(GenerationState.VALID)

    tracker.advance(GenerationState.RENDERING)
    try:
        data = render_invoice_pdf(invoice, logo=_load_logo(invoice, context))
    except RenderError:
        tracker.reject(GenerationState.RENDER_FAILED)
        raise
    tracker.advance(GenerationState.RENDERED)

    tracker.advance(GenerationState.STORING)
    try:
        locator = context.storage.store(data, invoice.filename)
    except StorageError:
        _LOGGER.warning("generation.store_failed invoice=%s", invoice.invoice_number)
        tracker.reject(GenerationState.STORE_FAILED)
        raise
    tracker.advance(GenerationState.DELIVERED)

    recorded = False
    if context.registry is not None:
        recorded = _record(invoice, locator, context.registry)

    _LOGGER.info(
        "generation.delivered invoice=%s bytes=%s locator=%s",
        invoice.invoice_number,
        len(data),
        locator,
    )
    return GenerationResult(
        invoice_number=invoice.invoice_number,
        client_name=invoice.customer.name,
        total=invoice.total,
        currency=invoice.currency,
        due_date=invoice.due_date,
        filename=invoice.filename,
        locator=locator,
        state=tracker.state,
        recorded=recorded,
    )


@contextmanager
def _tool_errors() -> Iterator[None]:
    """Translate pipeline errors into MCP tool errors with distinct prefixes."""

    try:
        yield
    except InvoiceValidationError as exc:
        raise ToolError(f"Invalid invoice data: {exc.describe()}") from exc
    except RenderError as exc:
        raise ToolError(f"PDF generation failed: {exc}") from exc
    except StorageError as exc:
        raise ToolError(f"PDF storage failed: {exc}") from exc
    except WritesDisabled as exc:
        raise ToolError(str(exc)) from exc
    except portalocker.LockException as exc:
        raise ToolError(f"Invoice registry is busy, try again: {exc}") from exc


def _context(context: GenerationContext | None) -> GenerationContext:
    return context or GenerationContext.from_settings()


def generate_invoice_pdf_impl(
    invoice: Mapping[str, Any], context: GenerationContext | None = None
) -> Dict[str, Any]:
    """Shared helper to validate, render and store one invoice."""

    with _tool_errors():
        ctx = _context(context)
        _require_writes_enabled(ctx.settings)
        result = generate_invoice(invoice, ctx)
    record_write_attempt(
        "generate_invoice",
        audit_log_path=ctx.settings.audit_log_path,
        invoice_number=result.invoice_number,
        locator=result.locator,
    )
    return result.to_payload()


def calculate_invoice_totals_impl(
    invoice: Mapping[str, Any], context: GenerationContext | None = None
) -> Dict[str, Any]:
    """Validate and compute totals without rendering or consuming a number."""

    with _tool_errors():
        ctx = _context(context)
        parsed = parse_invoice_input(apply_defaults(invoice, ctx.settings))
        built = calculate_invoice(
            parsed, today=ctx.today, invoice_number=PREVIEW_INVOICE_NUMBER
        )
    return summarize_totals(built)


def _registry(context: GenerationContext) -> InvoiceRegistry:
    if context.registry is None:
        raise ToolError("Invoice registry is not configured")
    return context.registry


def _normalize_sort(sort_by: str | None, direction: str | None) -> tuple[str, str]:
    allowed_sort = {"created_at", "client_name", "invoice_number", "total"}
    normalized_sort = sort_by if sort_by in allowed_sort else "created_at"
    normalized_direction = direction if direction in {"asc", "desc"} else "desc"
    return normalized_sort, normalized_direction


def coerce_total(record: InvoiceRecord) -> Decimal:
    """Convert a record's ``total`` to a Decimal, treating junk as zero."""

    try:
        return Decimal(record.total)
    except (ArithmeticError, TypeError, ValueError):
        return Decimal("0")


def _validate_limit(limit: int | None) -> int:
    try:
        parsed = int(limit) if limit is not None else DEFAULT_LIST_LIMIT
    except (TypeError, ValueError) as exc:
        raise ToolError("limit must be an integer") from exc

    if parsed < 1:
        raise ToolError("limit must be a positive integer")

    return min(parsed, MAX_LIST_LIMIT)


def _validate_offset(offset: int | None) -> int:
    try:
        parsed = int(offset) if offset is not None else 0
    except (TypeError, ValueError) as exc:
        raise ToolError("offset must be an integer") from exc

    if parsed < 0:
        raise ToolError("offset cannot be negative")

    return parsed


def _sort_records(
    records: list[InvoiceRecord], sort_by: str, direction: str
) -> list[InvoiceRecord]:
    key_funcs = {
        "created_at": lambda record: (record.created_at, record.invoice_number),
        "client_name": lambda record: (record.client_name.lower(), record.invoice_number),
        "invoice_number": lambda record: (record.invoice_number,),
        "total": lambda record: (coerce_total(record), record.invoice_number),
    }

    key_func = key_funcs.get(sort_by, key_funcs["created_at"])
    reverse = direction == "desc"
    return sorted(records, key=key_func, reverse=reverse)


def _filter_records(
    records: list[InvoiceRecord],
    *,
    status: InvoiceStatus | None = None,
    client_query: str | None = None,
    currency: str | None = None,
) -> list[InvoiceRecord]:
    filtered: list[InvoiceRecord] = []
    for record in records:
        if status and record.status != status:
            continue
        if currency and record.currency != currency.upper():
            continue
        if client_query and client_query.lower() not in record.client_name.lower():
            continue
        filtered.append(record)
    return filtered


def list_invoices_impl(
    *,
    status: InvoiceStatus | None = None,
    client_query: str | None = None,
    currency: str | None = None,
    limit: int = DEFAULT_LIST_LIMIT,
    offset: int = 0,
    sort_by: str | None = None,
    direction: str | None = None,
    context: GenerationContext | None = None,
) -> Dict[str, Any]:
    """List generated invoices from the registry with filters and pagination."""

    ctx = _context(context)
    records = _registry(ctx).all()

    filtered = _filter_records(
        records, status=status, client_query=client_query, currency=currency
    )
    normalized_sort, normalized_dir = _normalize_sort(sort_by, direction)
    sorted_records = _sort_records(filtered, normalized_sort, normalized_dir)

    safe_limit = _validate_limit(limit)
    safe_offset = _validate_offset(offset)

    page = sorted_records[safe_offset : safe_offset + safe_limit]
    has_more = safe_offset + safe_limit < len(filtered)

    return {
        "invoices": [record.to_payload() for record in page],
        "total_count": len(filtered),
        "limit": safe_limit,
        "offset": safe_offset,
        "has_more": has_more,
        "next_offset": safe_offset + safe_limit if has_more else None,
        "sort": {"by": normalized_sort, "direction": normalized_dir},
        "filters": {
            "status": status,
            "client_query": client_query,
            "currency": currency,
        },
    }


def _normalize_number(invoice_number: str | None) -> str:
    normalized = str(invoice_number).strip() if invoice_number is not None else ""
    if not normalized:
        raise ToolError("invoice_number is required")
    return normalized


def get_invoice_impl(
    invoice_number: str, context: GenerationContext | None = None
) -> Dict[str, Any]:
    """Load one registry entry by invoice number."""

    number = _normalize_number(invoice_number)
    ctx = _context(context)
    record = _registry(ctx).get(number)
    if record is None:
        raise InvoiceNotFound(f"Invoice {number} not found")
    return record.to_payload()


def update_invoice_status_impl(
    invoice_number: str,
    status: InvoiceStatus,
    context: GenerationContext | None = None,
) -> Dict[str, Any]:
    number = _normalize_number(invoice_number)
    ctx = _context(context)
    with _tool_errors():
        _require_writes_enabled(ctx.settings)
    if status not in ("generated", "sent", "paid"):
        raise ToolError("status must be one of: generated, sent, paid")

    with _tool_errors():
        try:
            updated = _registry(ctx).update_status(number, status)
        except KeyError as exc:
            raise InvoiceNotFound(f"Invoice {number} not found") from exc

    record_write_attempt(
        "update_invoice_status",
        audit_log_path=ctx.settings.audit_log_path,
        invoice_number=number,
        status=status,
    )
    return updated.to_payload()


def delete_invoice_impl(
    invoice_number: str, context: GenerationContext | None = None
) -> Dict[str, Any]:
    """Delete the stored PDF, then its registry entry.

    The entry goes last so a failed call can simply be retried.
    """

    number = _normalize_number(invoice_number)
    ctx = _context(context)
    registry = _registry(ctx)
    with _tool_errors():
        _require_writes_enabled(ctx.settings)
        record = registry.get(number)
        if record is None:
            raise InvoiceNotFound(f"Invoice {number} not found")
        ctx.storage.delete(record.filename)
        registry.remove(number)

    record_write_attempt(
        "delete_invoice",
        audit_log_path=ctx.settings.audit_log_path,
        invoice_number=number,
    )
    return {"deleted_invoice_number": number, "filename": record.filename}


def invoice_template() -> Dict[str, Any]:
    """An example generation request covering every optional field."""

    return {
        "invoiceNumber": "INV-2025-0001",
        "date": "2025-03-04",
        "dueDate": "2025-04-03",
        "dateStyle": "iso",
        "business": {
            "name": "Northwind Studio Ltd",
            "address": "1 High Street\nLondon\nEC1A 1AA",
            "email": "billing@northwind.example",
            "accountName": "Northwind Studio Ltd",
            "accountNumber": "12345678",
            "sortCode": "12-34-56",
        },
        "customer": {
            "name": "ACME Ltd",
            "email": "accounts@acme.example",
            "address": "42 Example Road\nManchester\nM1 1AA",
        },
        "items": [
            {"description": "Web development", "quantity": 10, "unitPrice": 75},
            {"description": "Logo design", "quantity": 5, "unitPrice": 60},
        ],
        "currency": "GBP",
        "vatRate": 0.2,
        "notes": "Thank you for your business.",
        "terms": "Payment due within 30 days of invoice date",
    }


def register(server: FastMCP) -> None:
    """Register invoice tools."""

    @server.tool()
    def generate_invoice_pdf(invoice: Dict[str, Any]) -> Dict[str, Any]:
        """Validate an invoice, render it to PDF and store it; returns the PDF locator.

        Input fields (camelCase; snake_case also accepted):
        - invoiceNumber: optional, [A-Za-z0-9._-]; generated as INV-YYYY-NNNN when omitted.
        - date / dueDate: optional YYYY-MM-DD; dueDate defaults to date + 30 days and
          may not be earlier than date.
        - business: {name, address?, email?, accountName?, accountNumber?, sortCode?, logoUrl?};
          missing fields fall back to the server configuration.
        - customer: {name, email?, address?} (required); addresses hold at most 8 lines.
        - items: [{description, 0 < quantity <= 1000000, 0 <= unitPrice <= 1000000000}]
          (1 to 1000 items, at most 4 decimal places).
          Line totals, subtotal, VAT and total are always computed server-side.
        - currency: GBP | USD | EUR | CAD (default GBP).
        - vatRate: fraction between 0 and 1 (default 0.20).
        - notes / terms: optional free text.

        Regenerating an existing invoice number overwrites the stored PDF.
        """

        return generate_invoice_pdf_impl(invoice)

    @server.tool()
    def calculate_invoice_totals(invoice: Dict[str, Any]) -> Dict[str, Any]:
        """Validate an invoice and return its computed totals without rendering a PDF."""

        return calculate_invoice_totals_impl(invoice)

    @server.tool()
    def list_invoices(
        status: InvoiceStatus | None = None,
        client_query: str | None = None,
        currency: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
        sort_by: str | None = None,
        direction: str | None = None,
    ) -> Dict[str, Any]:
        """Read-only listing of generated invoices with filters/pagination.

        sort_by: created_at | client_name | invoice_number | total; direction: asc | desc.
        """

        return list_invoices_impl(
            status=status,
            client_query=client_query,
            currency=currency,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            direction=direction,
        )

    @server.tool(name="get_invoice")
    def get_invoice_tool(invoice_number: str) -> Dict[str, Any]:
        """Read one generated invoice's metadata (locator, total, status) by number."""

        return get_invoice_impl(invoice_number)

    @server.tool()
    def update_invoice_status(invoice_number: str, status: InvoiceStatus) -> Dict[str, Any]:
        """Set the tracking status of a generated invoice: generated | sent | paid."""

        return update_invoice_status_impl(invoice_number, status)

    @server.tool()
    def delete_invoice(invoice_number: str) -> Dict[str, Any]:
        """Delete a generated invoice PDF and its registry entry (irreversible)."""

        return delete_invoice_impl(invoice_number)

    @server.tool()
    def get_invoice_template() -> Dict[str, Any]:
        """Return an example generate_invoice_pdf payload with every optional field filled in."""

        return invoice_template()


__all__ = [
    "GenerationContext",
    "GenerationResult",
    "GenerationState",
    "GenerationTracker",
    "InvoiceNotFound",
    "WritesDisabled",
    "apply_defaults",
    "build_invoice",
    "calculate_invoice_totals_impl",
    "delete_invoice_impl",
    "generate_invoice",
    "generate_invoice_pdf_impl",
    "get_invoice_impl",
    "invoice_template",
    "list_invoices_impl",
    "register",
    "update_invoice_status_impl",
]
