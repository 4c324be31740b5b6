"""Pydantic models for invoice input and the validated invoice record."""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

Currency = Literal["GBP", "USD", "EUR", "CAD"]
DateStyle = Literal["iso", "long"]
InvoiceStatus = Literal["generated", "sent", "paid"]

CURRENCIES: tuple[str, ...] = ("GBP", "USD", "EUR", "CAD")
INVOICE_NUMBER_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$"

DEFAULT_CURRENCY: Currency = "GBP"
DEFAULT_VAT_RATE = Decimal("0.20")
DEFAULT_PAYMENT_DAYS = 30

MAX_QUANTITY = Decimal("1000000")
MAX_UNIT_PRICE = Decimal("1000000000")
MAX_AMOUNT_PLACES = 4
MAX_ADDRESS_LINES = 8
MAX_ITEMS = 1000


def _to_decimal(value: Any) -> Any:
    # floats go through repr so 0.2 stays 0.2 instead of its binary expansion
    if isinstance(value, bool):
        raise ValueError("expected a number, got a boolean")
    if isinstance(value, float):
        return Decimal(repr(value))
    return value


def _check_invoice_number(value: str | None) -> str | None:
    if value is not None and ".." in value:
        raise ValueError("invoiceNumber cannot contain '..'")
    return value


def _check_address(value: str | None) -> str | None:
    if value is not None and len(value.splitlines()) > MAX_ADDRESS_LINES:
        raise ValueError(f"address cannot have more than {MAX_ADDRESS_LINES} lines")
    return value


def _normalize_currency(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper()
    return value


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="forbid",
    )


class Business(_Model):
    name: str = Field(min_length=1, max_length=256)
    address: str | None = Field(default=None, max_length=500)
    email: str | None = Field(default=None, max_length=256)
    account_name: str | None = Field(default=None, max_length=256)
    account_number: str | None = Field(default=None, max_length=64)
    sort_code: str | None = Field(default=None, max_length=32)
    logo_url: str | None = Field(default=None, max_length=2048)

    @field_validator("address")
    @classmethod
    def _address_fits_letterhead(cls, value: str | None) -> str | None:
        return _check_address(value)


class Customer(_Model):
    name: str = Field(min_length=1, max_length=256)
    email: str | None = Field(default=None, max_length=256)
    address: str | None = Field(default=None, max_length=500)

    @field_validator("address")
    @classmethod
    def _address_fits_bill_to(cls, value: str | None) -> str | None:
        return _check_address(value)


class LineItemInput(_Model):
    """A caller-supplied line item; ``total`` is accepted but never used."""

    description: str = Field(min_length=1, max_length=512)
    quantity: Decimal = Field(
        gt=0, le=MAX_QUANTITY, decimal_places=MAX_AMOUNT_PLACES, allow_inf_nan=False
    )
    unit_price: Decimal = Field(
        ge=0, le=MAX_UNIT_PRICE, decimal_places=MAX_AMOUNT_PLACES, allow_inf_nan=False
    )
    total: Decimal | None = None

    @field_validator("quantity", "unit_price", "total", mode="before")
    @classmethod
    def _coerce_numbers(cls, value: Any) -> Any:
        return _to_decimal(value)


class InvoiceInput(_Model):
    """Raw generation request, before any totals are computed.

    ``subtotal``, ``vat_amount`` and ``total`` are tolerated so that callers
    replaying a previous invoice are not rejected; they are discarded.
    """

    invoice_number: str | None = Field(default=None, pattern=INVOICE_NUMBER_PATTERN)
    invoice_date: date | None = Field(default=None, alias="date")
    due_date: date | None = None
    date_style: DateStyle = "iso"
    business: Business
    customer: Customer
    items: list[LineItemInput] = Field(max_length=MAX_ITEMS)
    currency: Currency = DEFAULT_CURRENCY
    vat_rate: Decimal = Field(
        default=DEFAULT_VAT_RATE,
        ge=0,
        le=1,
        decimal_places=MAX_AMOUNT_PLACES,
        allow_inf_nan=False,
    )
    notes: str | None = Field(default=None, max_length=2000)
    terms: str | None = Field(default=None, max_length=2000)

    subtotal: Decimal | None = None
    vat_amount: Decimal | None = None
    total: Decimal | None = None

    @field_validator("vat_rate", "subtotal", "vat_amount", "total", mode="before")
    @classmethod
    def _coerce_amounts(cls, value: Any) -> Any:
        return _to_decimal(value)

    @field_validator("invoice_number")
    @classmethod
    def _number_is_filename_safe(cls, value: str | None) -> str | None:
        return _check_invoice_number(value)

    @field_validator("currency", mode="before")
    @classmethod
    def _upper_currency(cls, value: Any) -> Any:
        return _normalize_currency(value)

    @field_validator("items")
    @classmethod
    def _require_items(cls, value: list[LineItemInput]) -> list[LineItemInput]:
        if not value:
            raise ValueError("at least one line item is required")
        return value

    @field_validator("due_date")
    @classmethod
    def _due_date_not_before_invoice_date(cls, value: date | None, info):
        invoice_date = info.data.get("invoice_date")
        if value and invoice_date and value < invoice_date:
            raise ValueError("dueDate cannot be before date")
        return value


class InvoiceItem(_Model):
    model_config = ConfigDict(frozen=True)

    description: str = Field(min_length=1, max_length=512)
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    total: Decimal = Field(ge=0)

    @model_validator(mode="after")
    def _total_matches(self) -> "InvoiceItem":
        if self.total != self.quantity * self.unit_price:
            raise ValueError("item total must equal quantity * unitPrice")
        return self


class Invoice(_Model):
    """A validated invoice with every amount computed server-side."""

    model_config = ConfigDict(frozen=True)

    invoice_number: str = Field(pattern=INVOICE_NUMBER_PATTERN)
    invoice_date: date = Field(alias="date")
    due_date: date
    date_style: DateStyle = "iso"
    business: Business
    customer: Customer
    items: list[InvoiceItem] = Field(min_length=1)
    currency: Currency
    vat_rate: Decimal = Field(ge=0, le=1)
    subtotal: Decimal = Field(ge=0)
    vat_amount: Decimal = Field(ge=0)
    total: Decimal = Field(ge=0)
    notes: str | None = None
    terms: str | None = None

    @field_validator("invoice_number")
    @classmethod
    def _number_is_filename_safe(cls, value: str) -> str:
        return _check_invoice_number(value)

    @model_validator(mode="after")
    def _amounts_are_consistent(self) -> "Invoice":
        if self.due_date < self.invoice_date:
            raise ValueError("dueDate cannot be before date")
        if self.subtotal != sum((item.total for item in self.items), Decimal("0")):
            raise ValueError("subtotal must equal the sum of item totals")
        if self.vat_amount != self.subtotal * self.vat_rate:
            raise ValueError("vatAmount must equal subtotal * vatRate")
        if self.total != self.subtotal + self.vat_amount:
            raise ValueError("total must equal subtotal + vatAmount")
        return self

    @property
    def filename(self) -> str:
        return f"invoice-{self.invoice_number}.pdf"

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


__all__ = [
    "CURRENCIES",
    "Business",
    "Currency",
    "Customer",
    "DEFAULT_CURRENCY",
    "DEFAULT_PAYMENT_DAYS",
    "DEFAULT_VAT_RATE",
    "MAX_ADDRESS_LINES",
    "MAX_ITEMS",
    "MAX_QUANTITY",
    "MAX_UNIT_PRICE",
    "DateStyle",
    "Invoice",
    "InvoiceInput",
    "InvoiceItem",
    "InvoiceStatus",
    "LineItemInput",
]
