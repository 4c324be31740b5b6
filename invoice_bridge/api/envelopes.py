"""Envelope helpers for HTTP/MCP responses."""
from __future__ import annotations


def envelope_ok(data: object) -> dict[str, object]:
    return {"ok": True, "data": data, "errors": []}


def envelope_error(message: str, *, code: str | None = None) -> dict[str, object]:
    error: dict[str, object] = {"message": message}
    if code:
        error["code"] = code
    return {"ok": False, "data": None, "errors": [error]}


__all__ = ["envelope_error", "envelope_ok"]
