"""HTTP routes for generated invoices and their stored PDFs."""
from __future__ import annotations

import json
from typing import Any, Callable

from mcp.server.fastmcp.exceptions import ToolError
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response
from starlette.routing import Route

from invoice_bridge.backends.invoices import (
    GenerationContext,
    InvoiceNotFound,
    WritesDisabled,
    delete_invoice_impl,
    generate_invoice_pdf_impl,
    get_invoice_impl,
    list_invoices_impl,
    update_invoice_status_impl,
)
from invoice_bridge.backends.invoices_errors import (
    InvoiceValidationError,
    RenderError,
    StorageError,
)
from invoice_bridge.backends.invoices_storage import PDF_MIME_TYPE, LocalPdfStorage

from .envelopes import envelope_error, envelope_ok

ContextFactory = Callable[[], GenerationContext]


def _status_for(exc: ToolError) -> int:
    if isinstance(exc, InvoiceNotFound):
        return 404
    cause = exc.__cause__
    if isinstance(cause, WritesDisabled):
        return 403
    if isinstance(cause, RenderError):
        return 500
    if isinstance(cause, StorageError):
        return 502
    return 400


def _error(exc: ToolError) -> JSONResponse:
    status = _status_for(exc)
    code = None
    if isinstance(exc.__cause__, InvoiceValidationError):
        code = "invalid_invoice"
    return JSONResponse(envelope_error(str(exc), code=code), status_code=status)


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ToolError(f"Request body must be JSON: {exc}") from exc


def make_routes(context_factory: ContextFactory | None = None) -> list[Route]:
    """Build the HTTP routes; ``context_factory`` yields a fresh context per request.

    The backends do blocking file, lock and network IO, so every call into
    them runs on the threadpool rather than the event loop.
    """

    factory = context_factory or GenerationContext.from_settings

    async def health(request: Request) -> JSONResponse:
        return JSONResponse(envelope_ok({"status": "ok"}))

    async def list_files(request: Request) -> JSONResponse:
        context = await run_in_threadpool(factory)
        if not isinstance(context.storage, LocalPdfStorage):
            return JSONResponse(
                envelope_error("File listing is only available for local storage"),
                status_code=404,
            )
        names = await run_in_threadpool(context.storage.list_names)
        return JSONResponse(envelope_ok({"files": names}))

    async def download_file(request: Request) -> Response:
        context = await run_in_threadpool(factory)
        name = request.path_params["filename"]
        if not isinstance(context.storage, LocalPdfStorage):
            return JSONResponse(
                envelope_error("Files are served by the remote storage"), status_code=404
            )
        try:
            path = context.storage.path_for(name)
        except StorageError as exc:
            return JSONResponse(envelope_error(str(exc)), status_code=400)
        if not path.is_file():
            return JSONResponse(envelope_error(f"File {name} not found"), status_code=404)
        return FileResponse(path, media_type=PDF_MIME_TYPE, filename=path.name)

    async def list_invoices(request: Request) -> JSONResponse:
        params = request.query_params
        try:
            context = await run_in_threadpool(factory)
            payload = await run_in_threadpool(
                list_invoices_impl,
                status=params.get("status"),
                client_query=params.get("client_query"),
                currency=params.get("currency"),
                limit=params.get("limit"),
                offset=params.get("offset"),
                sort_by=params.get("sort_by"),
                direction=params.get("direction"),
                context=context,
            )
        except ToolError as exc:
            return _error(exc)
        return JSONResponse(envelope_ok(payload))

    async def create_invoice(request: Request) -> JSONResponse:
        try:
            body = await _json_body(request)
            context = await run_in_threadpool(factory)
            payload = await run_in_threadpool(
                generate_invoice_pdf_impl, body, context=context
            )
        except ToolError as exc:
            return _error(exc)
        return JSONResponse(envelope_ok(payload), status_code=201)

    async def get_invoice(request: Request) -> JSONResponse:
        try:
            context = await run_in_threadpool(factory)
            payload = await run_in_threadpool(
                get_invoice_impl, request.path_params["invoice_number"], context=context
            )
        except ToolError as exc:
            return _error(exc)
        return JSONResponse(envelope_ok(payload))

    async def update_status(request: Request) -> JSONResponse:
        try:
            body = await _json_body(request)
            status = body.get("status") if isinstance(body, dict) else None
            context = await run_in_threadpool(factory)
            payload = await run_in_threadpool(
                update_invoice_status_impl,
                request.path_params["invoice_number"],
                status,
                context=context,
            )
        except ToolError as exc:
            return _error(exc)
        return JSONResponse(envelope_ok(payload))

    async def delete_invoice(request: Request) -> JSONResponse:
        try:
            context = await run_in_threadpool(factory)
            payload = await run_in_threadpool(
                delete_invoice_impl, request.path_params["invoice_number"], context=context
            )
        except ToolError as exc:
            return _error(exc)
        return JSONResponse(envelope_ok(payload))

    return [
        Route("/health", health, methods=["GET"]),
        Route("/files", list_files, methods=["GET"]),
        Route("/files/{filename}", download_file, methods=["GET"]),
        Route("/invoices", list_invoices, methods=["GET"]),
        Route("/invoices", create_invoice, methods=["POST"]),
        Route("/invoices/{invoice_number}", get_invoice, methods=["GET"]),
        Route("/invoices/{invoice_number}/status", update_status, methods=["PATCH"]),
        Route("/invoices/{invoice_number}", delete_invoice, methods=["DELETE"]),
    ]


__all__ = ["make_routes"]
