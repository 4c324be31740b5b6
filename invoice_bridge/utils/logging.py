"""Logging setup and the optional JSON-lines audit trail."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

LOG_FORMAT = "%(levelname)s:%(name)s:%(message)s"

_LOGGER = logging.getLogger("invoice_bridge.audit")


def configure_root(level: int = logging.INFO) -> None:
    """(Re)configure the root logger, replacing handlers installed earlier."""

    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)


def record_write_attempt(
    action: str, *, audit_log_path: Optional[Path] = None, **fields: Any
) -> None:
    """Log a write-capable action and append it to the audit log if configured."""

    _LOGGER.info("write.%s %s", action, fields)
    if audit_log_path is None:
        return

    entry = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "action": action,
        **fields,
    }
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    with audit_log_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry, sort_keys=True, default=str))
        handle.write("\n")


__all__ = ["LOG_FORMAT", "configure_root", "record_write_attempt"]
