from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, Request

from velosync.apps.api.errors import register_exception_handlers
from velosync.apps.api.response import API_VERSION
from velosync.apps.api.routes.activities import router as activities_router
from velosync.apps.api.routes.health import router as health_router
from velosync.apps.api.routes.ops import router as ops_router
from velosync.apps.api.routes.webhooks import router as webhooks_router
from velosync.core.logging import configure_logging
from velosync.services.telemetry import record_request


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="velosync API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Read surface for clients; envelopes and tier gating apply here.
    app.include_router(activities_router, prefix=f"/{API_VERSION}")
    # Push-subscription callbacks and operator tooling answer unversioned.
    app.include_router(webhooks_router)
    app.include_router(ops_router)
    return app


app = create_app()
