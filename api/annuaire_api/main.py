from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from annuaire_api.api.router import api_router
from annuaire_api.core.config import get_settings
from annuaire_api.core.telemetry import TelemetryRuntime, request_span, setup_api_telemetry, shutdown_api_telemetry
from annuaire_api.services.local_source import get_local_source
from annuaire_api.services.repository import get_repository

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(_telemetry_runtime)
        # Ensure asyncpg pools shut down on app teardown.
        await get_repository().close()
        get_repository.cache_clear()
        await get_local_source().close()
        get_local_source.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    with request_span(request.method, request.url.path) as span:
        response = await call_next(request)
        span.set_attribute("http.response.status_code", response.status_code)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
