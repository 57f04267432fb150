# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Gateway Certificate Agent - Main Application Entry Point.

Runs the certificate manager next to the gateway and exposes health,
readiness and Prometheus metrics endpoints. Readiness turns green once the
TLS bundle has been written for the proxy to consume.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from .ca_client import ConsulCAClient
from .config import get_settings
from .logging_config import configure_logging, get_logger
from .manager import CertManager, CertManagerOptions, ManagerState

logger = get_logger(__name__)

# Application state
app_state: dict[str, Any] = {
    "manager": None,
    "started_at": None,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()
    settings = get_settings()
    logger.info(
        "Starting gateway certificate agent",
        version=settings.app_version,
        environment=settings.environment,
        service_name=settings.service_name,
    )
    app_state["started_at"] = datetime.now(timezone.utc)

    client: ConsulCAClient | None = None
    manager: CertManager | None = None
    if settings.cert_manager_enabled:
        client = ConsulCAClient.from_settings(settings)
        manager = CertManager(
            client,
            settings.service_name,
            CertManagerOptions.from_settings(settings),
        )
        manager.start()
        app_state["manager"] = manager
    else:
        logger.info("Certificate manager disabled")

    yield

    logger.info("Shutting down gateway certificate agent")
    if manager is not None:
        await manager.stop()
    if client is not None:
        await client.aclose()
    app_state["manager"] = None


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Certificate lifecycle agent for the STOA gateway",
        version=settings.app_version,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    register_routes(app)
    return app


def _manager_failed(manager: CertManager | None) -> bool:
    return manager is not None and manager.state == ManagerState.FAILED


def register_routes(app: FastAPI) -> None:
    """Register all application routes."""

    @app.get("/health", tags=["Health"])
    async def health_check() -> JSONResponse:
        """Health check endpoint for Kubernetes probes.

        Returns 503 once the certificate manager has given up, so the
        orchestrator restarts the pod.
        """
        settings = get_settings()
        manager: CertManager | None = app_state["manager"]
        failed = _manager_failed(manager)
        content = {
            "status": "unhealthy" if failed else "healthy",
            "service": "gateway-certs",
            "version": settings.app_version,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        error = manager.error() if manager is not None else None
        if error is not None:
            content["error"] = str(error)
        return JSONResponse(content=content, status_code=503 if failed else 200)

    @app.get("/ready", tags=["Health"])
    async def readiness_check() -> JSONResponse:
        """Readiness check endpoint for Kubernetes.

        Returns 200 once the certificates have been written at least once.
        """
        settings = get_settings()
        manager: CertManager | None = app_state["manager"]

        checks: dict[str, Any] = {
            "service": "gateway-certs",
            "version": settings.app_version,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "certificates_written": manager is not None and manager.written,
                "manager_healthy": not _manager_failed(manager),
            },
        }
        if manager is not None:
            checks["manager"] = {
                "state": manager.state.value,
                "writes": manager.writes,
                "failures": manager.failures,
                "next_renewal_at": (
                    manager.next_renewal_at.isoformat() if manager.next_renewal_at else None
                ),
            }

        is_ready = all(checks["checks"].values())
        checks["status"] = "ready" if is_ready else "not_ready"

        return JSONResponse(
            content=checks,
            status_code=200 if is_ready else 503,
        )

    @app.get("/live", tags=["Health"])
    async def liveness_check() -> dict[str, str]:
        """Liveness check endpoint for Kubernetes."""
        return {"status": "alive"}

    if not get_settings().enable_metrics:
        return

    @app.get("/metrics", tags=["Observability"])
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )


# Create the application instance
app = create_app()


def main() -> None:
    """Run the application with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "gateway_certs.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
