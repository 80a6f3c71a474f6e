from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from latchkey.api.schemas import Envelope, ErrorBody
from latchkey.errors import LatchkeyError
from latchkey.logging import get_logger
from latchkey.storage.errors import StoreError

logger = get_logger(__name__)


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str = "server_error",
) -> JSONResponse:
    envelope = Envelope(status="error", error=ErrorBody(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    """Render core errors as error envelopes."""

    @app.exception_handler(LatchkeyError)
    async def handle_latchkey_error(request: Request, exc: LatchkeyError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "latchkey_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        # Setup defects are not described to clients
        message = exc.message if exc.status_code < 500 else "internal server error"
        details = exc.detail if exc.status_code < 500 else None
        return _error_response(exc.status_code, message, details, code=exc.error_code)

    @app.exception_handler(StoreError)
    async def handle_store_error(request: Request, exc: StoreError):
        logger.error(
            "store_error",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(503, "session store unavailable", code="store_unavailable")
