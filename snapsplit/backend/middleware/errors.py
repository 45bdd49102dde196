import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from snapsplit.common.errors import SnapSplitError

from ..utils.envelope import error

log = logging.getLogger("snapsplit.main")


def install_error_handlers(app: FastAPI) -> None:
    """Every failure leaves as {ok: false, error, message}; no stack traces."""

    @app.exception_handler(SnapSplitError)
    async def _domain_error(request: Request, exc: SnapSplitError):
        return error(exc.message, code=exc.code, status=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        return error(f"{where}: {first.get('msg', 'invalid request')}", code="VALIDATION_ERROR", status=422)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return error(str(exc.detail), code=f"HTTP_{exc.status_code}", status=exc.status_code)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.exception(f"[ERROR] {request.method} {request.url.path}: {exc}")
        return error("Internal server error", code="INTERNAL_ERROR", status=500)
