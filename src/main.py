"""Main application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from src import metrics
from src.api import responses
from src.api.routes import fragrances, proxy
from src.config import settings
from src.errors import AppError
from src.logging_config import setup_logging
from src.services import Services, build_services
from src.worker.scheduler import setup_scheduler

logger = logging.getLogger(__name__)

ServicesFactory = Callable[[], Services]


def _describe_validation_error(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(item) for item in err.get("loc", ()) if item not in ("query", "path", "body"))
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if not exc.is_operational:
            logger.exception(f"Unexpected error on {request.url.path}: {exc.message}", exc_info=exc)
            return responses.error("Internal Server Error", exc.status_code)
        if exc.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
        return responses.error(exc.message, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return responses.error(_describe_validation_error(exc), 400)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return responses.error(f"Route {request.url.path} not found", 404)
        return responses.error(str(exc.detail), exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}", exc_info=exc)
        return responses.error("Internal Server Error", 500)


def create_app(
    services_factory: Optional[ServicesFactory] = None,
    enable_scheduler: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services_factory: Builds the service container at startup; defaults to
            wiring everything from settings
        enable_scheduler: Start the periodic quota and cleanup jobs
    """
    factory = services_factory or build_services

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting fragrance scraper...")
        services = factory()
        await services.start()
        app.state.services = services
        metrics.app_info.info({"version": app.version})

        scheduler = None
        if enable_scheduler:
            scheduler = setup_scheduler(services)
            scheduler.start()
            logger.info("Scheduler started")

        stats = services.pool.statistics()
        logger.info(f"Loaded {stats.total} proxy credentials ({stats.active} active)")

        yield

        logger.info("Shutting down...")
        if scheduler:
            scheduler.shutdown(wait=False)
        await services.close()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Fragrance Scraper",
        description="Parfumo catalog scraper behind a metered proxy credential pool",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Add Prometheus instrumentation
    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        excluded_handlers=["/metrics", "/health"],
    ).instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

    register_exception_handlers(app)
    app.include_router(fragrances.router)
    app.include_router(proxy.router)

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint."""
        services: Services = request.app.state.services
        stats = services.pool.statistics()
        return responses.success(
            {
                "status": "healthy",
                "credentials": {"total": stats.total, "active": stats.active},
            }
        )

    return app


setup_logging()
app = create_app()


def main():
    uvicorn.run(
        "src.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
