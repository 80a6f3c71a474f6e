from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from latchkey.api.error_handling import register_exception_handlers
from latchkey.api.routes import router
from latchkey.logging import get_logger, set_correlation_id
from latchkey.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the runtime store (and its TTL sweep) for the app's lifetime."""
    runtime = get_runtime()
    await runtime.open()
    try:
        yield
    finally:
        await runtime.close()
        logger.info("runtime_cleanup_complete")


app = FastAPI(title="Latchkey", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)
