"""Search service main application."""

import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from memoria.common.config import SearchConfig
from memoria.common.logging import configure_logging
from memoria.common.metrics import MetricsCollector

from .api.routes import router as api_router
from .hybrid.search_manager import SearchManager, create_search_manager
from .runtime.metrics import SERVICE_NAME, create_metrics_collector

logger = structlog.get_logger("search_service")


def create_app(
    search_manager: Optional[SearchManager] = None,
    metrics: Optional[MetricsCollector] = None,
    config: Optional[SearchConfig] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Parameters
    - search_manager: Pre-built manager (tests); built from ``config`` when omitted
    - metrics: Metrics collector; a fresh one is created when omitted
    - config: Service configuration; read from the environment when omitted
    """
    metrics_collector = metrics or create_metrics_collector()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        service_config = config or SearchConfig()
        configure_logging(SERVICE_NAME, service_config.memoria_log_level, service_config.memoria_log_format)
        logger.info("Starting search service", env=service_config.memoria_env)

        manager = search_manager or create_search_manager(service_config, metrics_collector)
        await manager.initialize()
        app.state.search_manager = manager

        logger.info("Search service started successfully")

        yield

        logger.info("Shutting down search service")
        await manager.cleanup()
        logger.info("Search service shutdown complete")

    app = FastAPI(
        title="Memoria Search Service",
        description="Hybrid lexical and semantic search over captured items",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.metrics_collector = metrics_collector

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Collect metrics for HTTP requests."""
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            logger.error("Unhandled request error", path=request.url.path, error=str(e))
            status_code = 500
            response = JSONResponse(
                status_code=500,
                content={"error": "Internal server error"},
            )

        duration = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = str(duration)

        route = request.scope.get("route")
        metrics_collector.record_http_request(
            method=request.method,
            endpoint=getattr(route, "path", request.url.path),
            status=status_code,
            duration=duration,
        )
        return response

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        try:
            health = await request.app.state.search_manager.health_check()
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "service": SERVICE_NAME, "error": str(e)},
            )

        health["service"] = SERVICE_NAME
        status_code = 503 if health["status"] == "unhealthy" else 200
        return JSONResponse(status_code=status_code, content=health)

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(content=metrics_collector.get_metrics(), media_type="text/plain")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": SERVICE_NAME,
            "version": "0.1.0",
            "status": "running",
            "endpoints": {
                "health": "/health",
                "metrics": "/metrics",
                "search": "/api/v1/search",
                "items": "/api/v1/items",
                "index": "/api/v1/index/stats",
            },
        }

    return app


app = create_app()


if __name__ == "__main__":
    service_config = SearchConfig()
    uvicorn.run(
        "service_search.app.main:app",
        host="0.0.0.0",
        port=service_config.memoria_search_port,
        log_level=service_config.memoria_log_level.lower(),
    )
