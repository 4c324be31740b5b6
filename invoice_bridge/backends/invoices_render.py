"""Fixed-layout PDF rendering of validated invoices."""
from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

from ..utils.files import write_bytes_atomic
from .invoices_calc import round_money
from .invoices_errors import RenderError
from .invoices_models import DateStyle, Invoice

_LOGGER = logging.getLogger("invoice_bridge.backends.invoices_render")

LogoFetcher = Callable[[str], Optional[bytes]]

PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN = 50.0
CONTENT_RIGHT = PAGE_WIDTH - MARGIN
CONTENT_WIDTH = CONTENT_RIGHT - MARGIN
BOTTOM_LIMIT = MARGIN + 10.0

FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
FONT_SIZE = 9
LEADING = 12.0

LOGO_MAX_WIDTH = 150.0
LOGO_MAX_HEIGHT = 60.0

# table column anchors (right edges for numeric columns)
COL_DESCRIPTION = MARGIN + 6.0
COL_QUANTITY_RIGHT = 370.0
COL_UNIT_PRICE_RIGHT = 460.0
COL_TOTAL_RIGHT = CONTENT_RIGHT - 6.0
DESCRIPTION_WIDTH = COL_QUANTITY_RIGHT - 60.0 - COL_DESCRIPTION
TABLE_HEADER_HEIGHT = 18.0
ROW_PADDING = 6.0

TOTALS_LABEL_RIGHT = COL_UNIT_PRICE_RIGHT
TOTALS_ROW_HEIGHT = 16.0
TAIL_FIRST_ADVANCE = 14.0

# header blocks are wrapped to these widths and capped so the table always
# starts on the first page
LETTERHEAD_WIDTH = CONTENT_WIDTH - LOGO_MAX_WIDTH - 20.0
BILL_TO_WIDTH = 280.0
HEADER_MAX_LINES = 20

COLOR_TEXT = colors.HexColor("#222222")
COLOR_MUTED = colors.HexColor("#666666")
COLOR_BAR = colors.HexColor("#3A3A3A")
COLOR_BAR_TEXT = colors.HexColor("#F2F2F2")
COLOR_RULE = colors.HexColor("#CCCCCC")

PDF_CREATOR = "invoice-bridge"

_MONTHS = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

LABELS: dict[str, str] = {
    "TITLE": "INVOICE",
    "INVOICE_NUMBER": "Invoice No.",
    "INVOICE_DATE": "Date",
    "DUE_DATE": "Due date",
    "BILL_TO": "BILL TO",
    "DESCRIPTION": "Description",
    "QUANTITY": "Qty",
    "UNIT_PRICE": "Unit price",
    "LINE_TOTAL": "Amount",
    "SUBTOTAL": "Subtotal",
    "VAT": "VAT",
    "TOTAL": "Total",
    "TERMS": "Payment terms",
    "NOTES": "Notes",
    "BANK": "Bank details",
    "ACCOUNT_NAME": "Account name",
    "ACCOUNT_NUMBER": "Account number",
    "SORT_CODE": "Sort code",
}


def format_money(value: Decimal, currency: str) -> str:
    return f"{currency} {round_money(value):,.2f}"


def format_quantity(value: Decimal) -> str:
    if value == value.to_integral_value():
        return f"{value:.0f}"
    return format(value.normalize(), "f")


def format_rate(rate: Decimal) -> str:
    return f"{format_quantity(rate * 100)}%"


def format_date(value: date, date_style: DateStyle | str | None = "iso") -> str:
    """Format a date without touching the process locale."""

    style = date_style or "iso"
    if style == "iso":
        return value.isoformat()
    if style == "long":
        return f"{value.day} {_MONTHS[value.month - 1]} {value.year}"
    raise ValueError("date_style must be 'iso' or 'long'")


def _text_lines(text: str | None) -> list[str]:
    if not text:
        return []
    return [line.strip() for line in text.splitlines() if line.strip()]


def _wrap(text: str, font: str, size: float, width: float) -> list[str]:
    return simpleSplit(text, font, size, width) or [""]


def _header_lines(lines: list[str], width: float) -> list[str]:
    wrapped = [part for line in lines for part in _wrap(line, FONT, FONT_SIZE, width)]
    if len(wrapped) > HEADER_MAX_LINES:
        _LOGGER.warning(
            "render.header_truncated lines=%s limit=%s", len(wrapped), HEADER_MAX_LINES
        )
        wrapped = wrapped[: HEADER_MAX_LINES - 1] + [f"{wrapped[HEADER_MAX_LINES - 1]} ..."]
    return wrapped


def invoice_sections(invoice: Invoice) -> dict[str, Any]:
    """Resolve every string that ends up on the page.

    Empty lists or ``None`` mean the block is left out of the layout.
    """

    business = invoice.business
    customer = invoice.customer
    currency = invoice.currency

    letterhead = [*_text_lines(business.address)]
    if business.email:
        letterhead.append(business.email)

    bill_to = [*_text_lines(customer.address)]
    if customer.email:
        bill_to.append(customer.email)

    bank: list[tuple[str, str]] = []
    if business.account_name:
        bank.append((LABELS["ACCOUNT_NAME"], business.account_name))
    if business.account_number:
        bank.append((LABELS["ACCOUNT_NUMBER"], business.account_number))
    if business.sort_code:
        bank.append((LABELS["SORT_CODE"], business.sort_code))

    return {
        "BUSINESS_NAME": business.name,
        "LETTERHEAD": _header_lines(letterhead, LETTERHEAD_WIDTH),
        "META": [
            (LABELS["INVOICE_NUMBER"], invoice.invoice_number),
            (LABELS["INVOICE_DATE"], format_date(invoice.invoice_date, invoice.date_style)),
            (LABELS["DUE_DATE"], format_date(invoice.due_date, invoice.date_style)),
        ],
        "CUSTOMER_NAME": customer.name,
        "BILL_TO": _header_lines(bill_to, BILL_TO_WIDTH),
        "ITEM_ROWS": [
            (
                item.description,
                format_quantity(item.quantity),
                format_money(item.unit_price, currency),
                format_money(item.total, currency),
            )
            for item in invoice.items
        ],
        "TOTALS": [
            (LABELS["SUBTOTAL"], format_money(invoice.subtotal, currency)),
            (
                f"{LABELS['VAT']} ({format_rate(invoice.vat_rate)})",
                format_money(invoice.vat_amount, currency),
            ),
            (LABELS["TOTAL"], format_money(invoice.total, currency)),
        ],
        "TERMS": invoice.terms or None,
        "NOTES": invoice.notes or None,
        "BANK": bank,
    }


@dataclass
class _Row:
    lines: list[str]
    quantity: str
    unit_price: str
    total: str

    @property
    def height(self) -> float:
        return len(self.lines) * LEADING + ROW_PADDING


@dataclass(frozen=True)
class _TailLine:
    kind: str  # "total", "grand_total", "heading" or "text"
    text: str
    advance: float
    value: str = ""
    y: float = 0.0


@dataclass
class _Page:
    rows: list[_Row] = field(default_factory=list)
    tail: list[_TailLine] = field(default_factory=list)


def _build_rows(sections: dict[str, Any]) -> list[_Row]:
    return [
        _Row(_wrap(description, FONT, FONT_SIZE, DESCRIPTION_WIDTH), qty, unit, total)
        for description, qty, unit, total in sections["ITEM_ROWS"]
    ]


def _tail_blocks(sections: dict[str, Any]) -> list[tuple[str, list[str]]]:
    blocks: list[tuple[str, list[str]]] = []
    if sections["TERMS"]:
        blocks.append((LABELS["TERMS"], _wrap(sections["TERMS"], FONT, FONT_SIZE, CONTENT_WIDTH)))
    if sections["NOTES"]:
        blocks.append((LABELS["NOTES"], _wrap(sections["NOTES"], FONT, FONT_SIZE, CONTENT_WIDTH)))
    if sections["BANK"]:
        bank = [
            part
            for label, value in sections["BANK"]
            for part in _wrap(f"{label}: {value}", FONT, FONT_SIZE, CONTENT_WIDTH)
        ]
        blocks.append((LABELS["BANK"], bank))
    return blocks


def _tail_groups(sections: dict[str, Any]) -> list[list[_TailLine]]:
    """Everything after the item table, split into groups that share a page.

    The totals stay together and a heading keeps its first line; every other
    line may start a new page on its own.
    """

    totals = sections["TOTALS"]
    groups = [
        [
            _TailLine(
                "grand_total" if index == len(totals) - 1 else "total",
                label,
                TAIL_FIRST_ADVANCE if index == 0 else TOTALS_ROW_HEIGHT,
                value,
            )
            for index, (label, value) in enumerate(totals)
        ]
    ]
    gap = TOTALS_ROW_HEIGHT
    for heading, lines in _tail_blocks(sections):
        first, *rest = lines
        groups.append(
            [_TailLine("heading", heading, gap + 12.0), _TailLine("text", first, LEADING)]
        )
        groups.extend([_TailLine("text", line, LEADING)] for line in rest)
        gap = LEADING
    return groups


def _parties_top(sections: dict[str, Any], has_logo: bool) -> float:
    top = PAGE_HEIGHT - MARGIN
    letterhead_bottom = top - 18.0 - len(sections["LETTERHEAD"]) * LEADING
    logo_bottom = top - LOGO_MAX_HEIGHT if has_logo else top - 24.0
    return min(letterhead_bottom, logo_bottom) - 24.0


def _header_bottom(sections: dict[str, Any], has_logo: bool) -> float:
    parties_top = _parties_top(sections, has_logo)
    bill_to_bottom = parties_top - 14.0 - LEADING - len(sections["BILL_TO"]) * LEADING
    meta_bottom = parties_top - 24.0 - len(sections["META"]) * LEADING
    return min(bill_to_bottom, meta_bottom) - 20.0


def _continuation_top() -> float:
    return PAGE_HEIGHT - MARGIN - 30.0


def _paginate(
    rows: list[_Row], first_top: float, tail: list[list[_TailLine]]
) -> list[_Page]:
    """Assign rows and tail lines to pages, fixing each tail line's baseline."""

    pages = [_Page()]
    cursor = first_top - TABLE_HEADER_HEIGHT
    for row in rows:
        if cursor - row.height < BOTTOM_LIMIT and pages[-1].rows:
            pages.append(_Page())
            cursor = _continuation_top() - TABLE_HEADER_HEIGHT
        pages[-1].rows.append(row)
        cursor -= row.height

    for group in tail:
        restart = cursor - sum(line.advance for line in group) < BOTTOM_LIMIT
        if restart:
            pages.append(_Page())
            cursor = _continuation_top()
        for index, line in enumerate(group):
            cursor -= TAIL_FIRST_ADVANCE if restart and index == 0 else line.advance
            pages[-1].tail.append(replace(line, y=cursor))
    return pages


def _logo_reader(logo: bytes) -> ImageReader:
    return ImageReader(io.BytesIO(logo))


def _draw_logo(pdf: canvas.Canvas, reader: ImageReader) -> None:
    width, height = reader.getSize()
    scale = min(LOGO_MAX_WIDTH / width, LOGO_MAX_HEIGHT / height, 1.0)
    draw_w, draw_h = width * scale, height * scale
    top = PAGE_HEIGHT - MARGIN
    pdf.drawImage(
        reader, CONTENT_RIGHT - draw_w, top - draw_h, width=draw_w, height=draw_h, mask="auto"
    )


def _draw_first_header(
    pdf: canvas.Canvas, sections: dict[str, Any], reader: ImageReader | None
) -> None:
    top = PAGE_HEIGHT - MARGIN

    pdf.setFillColor(COLOR_TEXT)
    pdf.setFont(FONT_BOLD, 16)
    pdf.drawString(MARGIN, top - 14.0, sections["BUSINESS_NAME"])
    pdf.setFont(FONT, FONT_SIZE)
    pdf.setFillColor(COLOR_MUTED)
    y = top - 18.0
    for line in sections["LETTERHEAD"]:
        y -= LEADING
        pdf.drawString(MARGIN, y, line)

    if reader is not None:
        _draw_logo(pdf, reader)

    parties_top = _parties_top(sections, reader is not None)
    pdf.setStrokeColor(COLOR_RULE)
    pdf.setLineWidth(0.5)
    pdf.line(MARGIN, parties_top + 12.0, CONTENT_RIGHT, parties_top + 12.0)

    # bill-to block on the left
    pdf.setFillColor(COLOR_MUTED)
    pdf.setFont(FONT_BOLD, 8)
    pdf.drawString(MARGIN, parties_top - 8.0, LABELS["BILL_TO"])
    pdf.setFillColor(COLOR_TEXT)
    pdf.setFont(FONT_BOLD, 10)
    y = parties_top - 8.0 - 14.0
    pdf.drawString(MARGIN, y, sections["CUSTOMER_NAME"])
    pdf.setFont(FONT, FONT_SIZE)
    for line in sections["BILL_TO"]:
        y -= LEADING
        pdf.drawString(MARGIN, y, line)

    # title and metadata on the right
    pdf.setFont(FONT_BOLD, 20)
    pdf.drawRightString(CONTENT_RIGHT, parties_top - 16.0, LABELS["TITLE"])
    pdf.setFont(FONT, FONT_SIZE)
    y = parties_top - 24.0
    for label, value in sections["META"]:
        y -= LEADING
        pdf.setFillColor(COLOR_MUTED)
        pdf.drawRightString(CONTENT_RIGHT - 110.0, y, f"{label}:")
        pdf.setFillColor(COLOR_TEXT)
        pdf.drawRightString(CONTENT_RIGHT, y, value)


def _draw_continuation_header(pdf: canvas.Canvas, sections: dict[str, Any]) -> None:
    top = PAGE_HEIGHT - MARGIN
    number = sections["META"][0][1]
    pdf.setFillColor(COLOR_TEXT)
    pdf.setFont(FONT_BOLD, 11)
    pdf.drawString(MARGIN, top - 12.0, sections["BUSINESS_NAME"])
    pdf.setFont(FONT, FONT_SIZE)
    pdf.setFillColor(COLOR_MUTED)
    pdf.drawRightString(CONTENT_RIGHT, top - 12.0, f"{LABELS['TITLE'].title()} {number} (continued)")


def _draw_table_header(pdf: canvas.Canvas, top: float) -> float:
    pdf.setFillColor(COLOR_BAR)
    pdf.rect(MARGIN, top - TABLE_HEADER_HEIGHT, CONTENT_WIDTH, TABLE_HEADER_HEIGHT, stroke=0, fill=1)
    baseline = top - TABLE_HEADER_HEIGHT + 6.0
    pdf.setFillColor(COLOR_BAR_TEXT)
    pdf.setFont(FONT_BOLD, FONT_SIZE)
    pdf.drawString(COL_DESCRIPTION, baseline, LABELS["DESCRIPTION"])
    pdf.drawRightString(COL_QUANTITY_RIGHT, baseline, LABELS["QUANTITY"])
    pdf.drawRightString(COL_UNIT_PRICE_RIGHT, baseline, LABELS["UNIT_PRICE"])
    pdf.drawRightString(COL_TOTAL_RIGHT, baseline, LABELS["LINE_TOTAL"])
    return top - TABLE_HEADER_HEIGHT


def _draw_rows(pdf: canvas.Canvas, rows: list[_Row], top: float) -> float:
    y = top
    pdf.setFont(FONT, FONT_SIZE)
    for row in rows:
        baseline = y - LEADING
        pdf.setFillColor(COLOR_TEXT)
        for index, line in enumerate(row.lines):
            pdf.drawString(COL_DESCRIPTION, baseline - index * LEADING, line)
        pdf.drawRightString(COL_QUANTITY_RIGHT, baseline, row.quantity)
        pdf.drawRightString(COL_UNIT_PRICE_RIGHT, baseline, row.unit_price)
        pdf.drawRightString(COL_TOTAL_RIGHT, baseline, row.total)
        y -= row.height
        pdf.setStrokeColor(COLOR_RULE)
        pdf.setLineWidth(0.25)
        pdf.line(MARGIN, y, CONTENT_RIGHT, y)
    return y


def _draw_tail(pdf: canvas.Canvas, lines: list[_TailLine]) -> None:
    for line in lines:
        if line.kind in ("total", "grand_total"):
            is_grand_total = line.kind == "grand_total"
            pdf.setFont(FONT_BOLD if is_grand_total else FONT, 10 if is_grand_total else FONT_SIZE)
            pdf.setFillColor(COLOR_TEXT if is_grand_total else COLOR_MUTED)
            pdf.drawRightString(TOTALS_LABEL_RIGHT, line.y, f"{line.text}:")
            pdf.setFillColor(COLOR_TEXT)
            pdf.drawRightString(COL_TOTAL_RIGHT, line.y, line.value)
        elif line.kind == "heading":
            pdf.setFillColor(COLOR_TEXT)
            pdf.setFont(FONT_BOLD, FONT_SIZE)
            pdf.drawString(MARGIN, line.y, line.text)
        else:
            pdf.setFont(FONT, FONT_SIZE)
            pdf.setFillColor(COLOR_MUTED)
            pdf.drawString(MARGIN, line.y, line.text)


def _draw_page_number(pdf: canvas.Canvas, number: int, count: int) -> None:
    pdf.setFont(FONT, 8)
    pdf.setFillColor(COLOR_MUTED)
    pdf.drawCentredString(PAGE_WIDTH / 2.0, MARGIN - 20.0, f"Page {number} of {count}")


def _compose(invoice: Invoice, logo: bytes | None) -> bytes:
    sections = invoice_sections(invoice)
    reader = _logo_reader(logo) if logo else None

    rows = _build_rows(sections)
    first_top = _header_bottom(sections, reader is not None)
    pages = _paginate(rows, first_top, _tail_groups(sections))

    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4, invariant=1, pageCompression=0)
    pdf.setTitle(f"Invoice {invoice.invoice_number}")
    pdf.setAuthor(invoice.business.name)
    pdf.setSubject(f"Invoice for {invoice.customer.name}")
    pdf.setCreator(PDF_CREATOR)

    for number, page in enumerate(pages, start=1):
        if number == 1:
            _draw_first_header(pdf, sections, reader)
            top = first_top
        else:
            _draw_continuation_header(pdf, sections)
            top = _continuation_top()

        if page.rows:
            _draw_rows(pdf, page.rows, _draw_table_header(pdf, top))
        if page.tail:
            _draw_tail(pdf, page.tail)
        _draw_page_number(pdf, number, len(pages))
        pdf.showPage()

    pdf.save()
    return buffer.getvalue()


def render_invoice_pdf(invoice: Invoice, *, logo: bytes | None = None) -> bytes:
    """Render ``invoice`` to PDF bytes.

    The output depends only on the invoice and the logo bytes: rendering the
    same input twice returns identical bytes.
    """

    try:
        data = _compose(invoice, logo)
    except RenderError:
        raise
    except Exception as exc:
        _LOGGER.error(
            "render.failed invoice=%s error=%s", invoice.invoice_number, exc, exc_info=True
        )
        raise RenderError(
            f"Could not render invoice {invoice.invoice_number}: {exc}"
        ) from exc

    _LOGGER.debug("render.ok invoice=%s bytes=%s", invoice.invoice_number, len(data))
    return data


def write_invoice_pdf(
    invoice: Invoice, path: Path | str, *, logo: bytes | None = None
) -> Path:
    """Render ``invoice`` and write it to ``path``, creating parent directories.

    Nothing is left at ``path`` if rendering fails.
    """

    data = render_invoice_pdf(invoice, logo=logo)
    target = Path(path).expanduser()
    try:
        return write_bytes_atomic(target, data)
    except OSError as exc:
        raise RenderError(f"Could not write {target}: {exc.strerror or exc}") from exc


def _is_image(data: bytes) -> bool:
    try:
        width, height = _logo_reader(data).getSize()
    except Exception as exc:  # reportlab/PIL raise assorted errors for junk bytes
        _LOGGER.debug("logo.decode_failed error=%s", exc)
        return False
    return width > 0 and height > 0


def fetch_logo(
    url: str,
    *,
    timeout: float,
    max_bytes: int,
    transport: httpx.BaseTransport | None = None,
) -> bytes | None:
    """Download a logo image, giving up after ``timeout`` seconds.

    ``timeout`` bounds the whole download, not just each socket read, so a
    server dripping bytes cannot hold the request open. Returns ``None``
    when the logo cannot be used so the renderer simply leaves it out.
    """

    chunks: list[bytes] = []
    size = 0
    deadline = time.monotonic() + timeout
    try:
        with httpx.Client(timeout=timeout, follow_redirects=True, transport=transport) as client:
            with client.stream("GET", url) as response:
                response.raise_for_status()
                for chunk in response.iter_bytes():
                    if time.monotonic() > deadline:
                        _LOGGER.warning("logo.too_slow url=%s timeout=%s", url, timeout)
                        return None
                    size += len(chunk)
                    if size > max_bytes:
                        _LOGGER.warning(
                            "logo.too_large url=%s limit=%s", url, max_bytes
                        )
                        return None
                    chunks.append(chunk)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        _LOGGER.warning("logo.fetch_failed url=%s error=%s", url, exc)
        return None

    data = b"".join(chunks)
    if not _is_image(data):
        _LOGGER.warning("logo.not_an_image url=%s bytes=%s", url, len(data))
        return None
    return data


def make_logo_fetcher(
    *, timeout: float, max_bytes: int, transport: httpx.BaseTransport | None = None
) -> LogoFetcher:
    def _fetch(url: str) -> bytes | None:
        return fetch_logo(url, timeout=timeout, max_bytes=max_bytes, transport=transport)

    return _fetch


__all__ = [
    "LABELS",
    "LogoFetcher",
    "fetch_logo",
    "format_date",
    "format_money",
    "format_quantity",
    "format_rate",
    "invoice_sections",
    "make_logo_fetcher",
    "render_invoice_pdf",
    "write_invoice_pdf",
]
