from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from stackroll.api.router import api_router
from stackroll.core.config import get_settings
from stackroll.core.telemetry import TelemetryRuntime, configure_logging, setup_api_telemetry, shutdown_telemetry
from stackroll.services.repository import RepositoryUnavailableError, get_repository

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    configure_logging()
    repository = application.dependency_overrides.get(get_repository, get_repository)()
    try:
        await repository.ping()
    except RepositoryUnavailableError as exc:
        # /readyz keeps reporting 503 until the job store answers
        logger.warning("job store unavailable at startup: %s", exc)
    else:
        logger.info("job store reachable at startup")

    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)
        await repository.close()
        get_repository.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
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
