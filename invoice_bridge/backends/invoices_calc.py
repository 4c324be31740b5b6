"""Totals computation and validation for incoming invoice requests."""
from __future__ import annotations

from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Context, Decimal
from typing import Any, Mapping

from pydantic import ValidationError

from .invoices_errors import (
    InvoiceValidationError,
    Violation,
    violations_from_errors,
)
from .invoices_models import (
    DEFAULT_PAYMENT_DAYS,
    Invoice,
    InvoiceInput,
    InvoiceItem,
)

_CENT = Decimal("0.01")
# wide enough that quantizing any bounded total never overflows the precision
_MONEY_CONTEXT = Context(prec=60)


def round_money(value: Decimal) -> Decimal:
    """Round to two places; only used for presentation."""

    return value.quantize(_CENT, rounding=ROUND_HALF_UP, context=_MONEY_CONTEXT)


def parse_invoice_input(raw: InvoiceInput | Mapping[str, Any]) -> InvoiceInput:
    if isinstance(raw, InvoiceInput):
        return raw
    try:
        return InvoiceInput.model_validate(raw)
    except ValidationError as exc:
        raise InvoiceValidationError(violations_from_errors(exc.errors())) from exc


def _resolve_dates(
    request: InvoiceInput, today: date | None
) -> tuple[date, date, list[Violation]]:
    issue_date = request.invoice_date or today or date.today()
    due_date = request.due_date or issue_date + timedelta(days=DEFAULT_PAYMENT_DAYS)
    violations: list[Violation] = []
    if request.invoice_date is None and due_date < issue_date:
        violations.append(Violation("dueDate", "dueDate cannot be before date"))
    return issue_date, due_date, violations


def check_dates(
    raw: InvoiceInput | Mapping[str, Any], *, today: date | None = None
) -> None:
    """Reject a request whose defaulted issue date falls after its due date."""

    _, _, violations = _resolve_dates(parse_invoice_input(raw), today)
    if violations:
        raise InvoiceValidationError(violations)


def calculate_invoice(
    raw: InvoiceInput | Mapping[str, Any],
    *,
    today: date | None = None,
    invoice_number: str | None = None,
) -> Invoice:
    """Build a validated :class:`Invoice` from raw request data.

    Item totals, subtotal, VAT and grand total are always derived from
    quantity, unit price and VAT rate; totals sent by the caller are dropped.
    ``invoice_number`` is used only when the request does not carry one.

    Raises :class:`InvoiceValidationError` listing every violation.
    """

    request = parse_invoice_input(raw)

    violations: list[Violation] = []
    number = request.invoice_number or invoice_number
    if not number:
        violations.append(Violation("invoiceNumber", "an invoice number is required"))

    issue_date, due_date, date_violations = _resolve_dates(request, today)
    violations.extend(date_violations)

    if violations:
        raise InvoiceValidationError(violations)

    items = [
        InvoiceItem(
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total=item.quantity * item.unit_price,
        )
        for item in request.items
    ]
    subtotal = sum((item.total for item in items), Decimal("0"))
    vat_amount = subtotal * request.vat_rate
    total = subtotal + vat_amount

    try:
        return Invoice(
            invoice_number=number,
            invoice_date=issue_date,
            due_date=due_date,
            date_style=request.date_style,
            business=request.business,
            customer=request.customer,
            items=items,
            currency=request.currency,
            vat_rate=request.vat_rate,
            subtotal=subtotal,
            vat_amount=vat_amount,
            total=total,
            notes=request.notes,
            terms=request.terms,
        )
    except ValidationError as exc:
        raise InvoiceValidationError(violations_from_errors(exc.errors())) from exc


def summarize_totals(invoice: Invoice) -> dict[str, Any]:
    return {
        "invoiceNumber": invoice.invoice_number,
        "currency": invoice.currency,
        "items": [
            {
                "description": item.description,
                "quantity": str(item.quantity),
                "unitPrice": str(round_money(item.unit_price)),
                "total": str(round_money(item.total)),
            }
            for item in invoice.items
        ],
        "subtotal": str(round_money(invoice.subtotal)),
        "vatRate": str(invoice.vat_rate),
        "vatAmount": str(round_money(invoice.vat_amount)),
        "total": str(round_money(invoice.total)),
    }


__all__ = [
    "calculate_invoice",
    "check_dates",
    "parse_invoice_input",
    "round_money",
    "summarize_totals",
]
