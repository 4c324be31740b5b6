"""Runtime configuration helpers for the MCP server."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Final, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

# Load .env file from project root (if it exists)
load_dotenv()

INVOICE_ROOT_NAME = ".invoice_bridge"

DEFAULT_TERMS = "Payment due within 30 days of invoice date"
DEFAULT_LOGO_TIMEOUT = 5.0
DEFAULT_LOGO_MAX_BYTES = 2 * 1024 * 1024


def _parse_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    value = value.strip().lower()
    return value in {"1", "true", "yes", "on"}


def _parse_int(value: str | None, *, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float(value: str | None, *, default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(name: str, *, default: bool = False) -> bool:
    return _parse_bool(os.getenv(name), default=default)


def _env_int(name: str, *, default: int) -> int:
    return _parse_int(os.getenv(name), default=default)


def _env_float(name: str, *, default: float) -> float:
    return _parse_float(os.getenv(name), default=default)


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def get_invoice_root(base_path: Optional[Path] = None) -> Path:
    """
    Resolve the storage root for PDFs, the registry index and the sequence file.

    Priority:
    1) INVOICE_ROOT env var (absolute or relative to cwd)
    2) explicit base_path (caller-provided)
    3) repository root (parent of invoice_bridge/) to avoid dropping data in random cwd
    """

    env_root = os.getenv("INVOICE_ROOT", "").strip()
    if env_root:
        return Path(env_root).expanduser().resolve()

    if base_path is not None:
        return (base_path / INVOICE_ROOT_NAME).resolve()

    repo_root = Path(__file__).resolve().parents[2]
    return (repo_root / INVOICE_ROOT_NAME).resolve()


class Settings(BaseModel):
    """Snapshot of the environment taken when a request starts."""

    model_config = ConfigDict(frozen=True)

    root: Path
    storage: Literal["local", "supabase"] = "local"
    public_base_url: Optional[str] = None

    business_name: str = "Your Business"
    business_address: Optional[str] = None
    business_email: Optional[str] = None
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    sort_code: Optional[str] = None

    logo_url: Optional[str] = None
    logo_timeout: float = DEFAULT_LOGO_TIMEOUT
    logo_max_bytes: int = DEFAULT_LOGO_MAX_BYTES

    default_currency: str = "GBP"
    default_terms: str = DEFAULT_TERMS

    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    supabase_bucket: str = "invoices"

    enable_writes: bool = True
    audit_log_path: Optional[Path] = None

    def business_defaults(self) -> dict[str, str]:
        """Business fields used when a request leaves them out."""

        defaults = {
            "name": self.business_name,
            "address": self.business_address,
            "email": self.business_email,
            "accountName": self.account_name,
            "accountNumber": self.account_number,
            "sortCode": self.sort_code,
            "logoUrl": self.logo_url,
        }
        return {key: value for key, value in defaults.items() if value}


def load_settings() -> Settings:
    storage = (os.getenv("INVOICE_STORAGE", "") or "local").strip().lower()
    if storage not in {"local", "supabase"}:
        raise ValueError(
            f"INVOICE_STORAGE must be 'local' or 'supabase', got {storage!r}"
        )

    audit_log = _env_str("MCP_AUDIT_LOG")
    public_base_url = _env_str("INVOICE_PUBLIC_BASE_URL")

    return Settings(
        root=get_invoice_root(),
        storage=storage,
        public_base_url=public_base_url.rstrip("/") if public_base_url else None,
        business_name=_env_str("INVOICE_BUSINESS_NAME") or "Your Business",
        business_address=_env_str("INVOICE_BUSINESS_ADDRESS"),
        business_email=_env_str("INVOICE_BUSINESS_EMAIL"),
        account_name=_env_str("INVOICE_ACCOUNT_NAME"),
        account_number=_env_str("INVOICE_ACCOUNT_NUMBER"),
        sort_code=_env_str("INVOICE_SORT_CODE"),
        logo_url=_env_str("INVOICE_LOGO_URL"),
        logo_timeout=_env_float("INVOICE_LOGO_TIMEOUT", default=DEFAULT_LOGO_TIMEOUT),
        logo_max_bytes=_env_int("INVOICE_LOGO_MAX_BYTES", default=DEFAULT_LOGO_MAX_BYTES),
        default_currency=(_env_str("INVOICE_DEFAULT_CURRENCY") or "GBP").upper(),
        default_terms=_env_str("INVOICE_DEFAULT_TERMS") or DEFAULT_TERMS,
        supabase_url=_env_str("SUPABASE_URL"),
        supabase_key=_env_str("SUPABASE_KEY"),
        supabase_bucket=_env_str("SUPABASE_BUCKET") or "invoices",
        enable_writes=_env_bool("MCP_ENABLE_WRITES", default=True),
        audit_log_path=Path(audit_log).expanduser() if audit_log else None,
    )


MAX_LIST_LIMIT: Final[int] = _env_int("MCP_MAX_LIST_LIMIT", default=100)


__all__ = [
    "DEFAULT_TERMS",
    "INVOICE_ROOT_NAME",
    "MAX_LIST_LIMIT",
    "Settings",
    "get_invoice_root",
    "load_settings",
]
