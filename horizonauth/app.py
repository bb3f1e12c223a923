from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from horizonauth.api.error_handling import register_exception_handlers
from horizonauth.api.routes import router
from horizonauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from horizonauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", auth_mode=runtime.settings.auth_mode.value)
    yield
    await runtime.close()
    logger.info("runtime_cleanup_complete")


def create_app() -> FastAPI:
    app = FastAPI(title="Horizon Auth", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Bind ``X-Request-ID`` (or a fresh UUID) to the log context and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
