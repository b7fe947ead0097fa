from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ruleflow.api.error_handling import register_exception_handlers
from ruleflow.api.routes import router
from ruleflow.config import Settings
from ruleflow.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its worker pool on shutdown."""
    from ruleflow.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        logger.info(
            "runtime_ready",
            versions=len(runtime.store.versions),
            rules_root=runtime.settings.rules_root,
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))
        raise

    yield

    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Ruleflow Engine", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID for log tracing.

    The ID comes from the client's X-Request-ID header when present and is
    otherwise generated. It is bound to every log line emitted while handling
    the request, doubles as the handle for cancelling an in-flight execution,
    and is echoed back in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report liveness plus the number of rule versions loaded."""
    from ruleflow.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "healthy",
        "version": __version__,
        "checks": {
            "store": {"status": "ok", "versions": len(runtime.store.versions)},
        },
    }


def create_app() -> FastAPI:
    return app
