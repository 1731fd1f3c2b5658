"""
gridsim/errors.py
-----------------
Error taxonomy and the {code, result} envelope every route answers with.

    NotFound      -> 404   race / track / entrant absent
    Conflict      -> 400   duplicate entrant, qualifying already done
    BadRequest    -> 400   grid not set, lap count exceeded, bad payload
    Unauthorized  -> 401   missing or wrong X-API-KEY
    Internal      -> 500   lap collision with another writer, anything unexpected

All of them are HTTPException subclasses so route code can simply `raise`;
the handlers installed by install_error_handlers() render the envelope.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

log = logging.getLogger("gridsim")


class NotFound(HTTPException):
    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class BadRequest(HTTPException):
    def __init__(self, detail: str = "Bad request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class Conflict(BadRequest):
    """Invariant violation on the entrant/grid model. Reported as 400."""


class Unauthorized(HTTPException):
    def __init__(self, detail: str = "Unauthorized"):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


class Internal(HTTPException):
    def __init__(self, detail: str = "Internal server error"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


def envelope(result: Any, code: int = 200) -> Dict[str, Any]:
    return {"code": code, "result": result}


def _error_response(code: int, detail: Any) -> JSONResponse:
    return JSONResponse(status_code=code, content=envelope(detail, code))


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    loc = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    msg = str(first.get("msg", "invalid value"))
    # pydantic prefixes custom ValueError messages with "Value error, "
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    return f"{loc}: {msg}" if loc else msg


def install_error_handlers(app: FastAPI) -> None:
    """Register envelope-rendering handlers on the app."""

    @app.exception_handler(StarletteHTTPException)
    async def _http_exc(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error_response(exc.status_code, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def _validation_exc(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(status.HTTP_400_BAD_REQUEST, _first_validation_message(exc))

    @app.exception_handler(sqlite3.Error)
    async def _storage_exc(request: Request, exc: sqlite3.Error) -> JSONResponse:
        log.exception("storage failure on %s %s", request.method, request.url.path)
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Server error while accessing storage")

    @app.exception_handler(Exception)
    async def _unexpected_exc(request: Request, exc: Exception) -> JSONResponse:
        log.exception("unhandled error on %s %s", request.method, request.url.path)
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")
