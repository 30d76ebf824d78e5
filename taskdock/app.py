from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskdock.api.error_handling import register_exception_handlers
from taskdock.api.routes import router
from taskdock.config import get_settings
from taskdock.logging import get_logger, set_correlation_id
from taskdock.service.errors import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"

_settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the store on shutdown."""
    from taskdock.service.runtime import get_runtime

    try:
        get_runtime()
        logger.info("runtime_ready")
    except StoreUnavailable as exc:
        # Routes retry runtime construction lazily on first use
        logger.error("startup_store_unavailable", error=exc.message)

    yield

    from taskdock.service import runtime as runtime_module

    if runtime_module.runtime is not None:
        runtime_module.runtime.close()
        if runtime_module.runtime.cache is not None:
            await runtime_module.runtime.cache.close()
        logger.info("runtime_cleanup_complete")


app = FastAPI(title="taskdock", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "x-access-token",
        "x-refresh-token",
        "_id",
        "x-verification-token",
        "X-Request-ID",
    ],
    # Clients read freshly issued tokens from these response headers
    expose_headers=["x-access-token", "x-refresh-token", "X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id for the request's logs.

    Taken from ``X-Request-ID`` when the client sends one, otherwise
    generated, and echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


def create_app() -> FastAPI:
    return app
