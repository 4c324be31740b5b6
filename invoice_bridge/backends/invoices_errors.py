"""Error types raised by the invoice generation pipeline."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence


class InvoiceError(RuntimeError):
    """Base class for failures scoped to a single generation request."""


@dataclass(frozen=True)
class Violation:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}" if self.field else self.message


class InvoiceValidationError(InvoiceError):
    """Raised when the input does not describe a valid invoice.

    Carries every violation found, not just the first one.
    """

    def __init__(self, violations: Iterable[Violation]):
        self.violations: tuple[Violation, ...] = tuple(violations)
        super().__init__(self.describe())

    @property
    def fields(self) -> list[str]:
        return [violation.field for violation in self.violations]

    def describe(self) -> str:
        count = len(self.violations)
        noun = "violation" if count == 1 else "violations"
        lines = [f"{count} {noun}:"]
        lines.extend(f"- {violation}" for violation in self.violations)
        return "\n".join(lines)

    def to_payload(self) -> list[dict[str, str]]:
        return [{"field": v.field, "message": v.message} for v in self.violations]


class RenderError(InvoiceError):
    """Raised when the PDF document could not be composed."""


class StorageError(InvoiceError):
    """Raised when a rendered PDF could not be stored, resolved or deleted."""


def violations_from_errors(errors: Sequence[dict]) -> list[Violation]:
    """Convert pydantic ``ValidationError.errors()`` entries to violations."""

    violations: list[Violation] = []
    for error in errors:
        field = ".".join(str(part) for part in error.get("loc", ()))
        message = str(error.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        violations.append(Violation(field=field, message=message))
    return violations


__all__ = [
    "InvoiceError",
    "InvoiceValidationError",
    "RenderError",
    "StorageError",
    "Violation",
    "violations_from_errors",
]
