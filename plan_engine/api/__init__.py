"""
Payment Plan API

FastAPI application exposing the plan engine. Routers map operation results
onto HTTP status codes; see dependencies.py for how the engine is shared.
"""

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .plans import router as plans_router
from .installments import router as installments_router
from .payments import payments_router, payment_requests_router
from .jobs import router as jobs_router


ROUTERS = (
    (plans_router, "/plans", "Plans"),
    (installments_router, "/installments", "Installments"),
    (payments_router, "/payments", "Payments"),
    (payment_requests_router, "/payment-requests", "Payment Requests"),
    (jobs_router, "/jobs", "Jobs"),
)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Payment Plan Engine API",
        description="Payment plan lifecycle: schedules, status, pause/resume, reschedule, payments and refunds",
        version=__version__
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for router, prefix, tag in ROUTERS:
        app.include_router(router, prefix=prefix, tags=[tag])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "plan_engine_api", "version": __version__}

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8095, workers: int = 1, reload: bool = False):
    """Serve the API with uvicorn"""
    uvicorn.run(
        "plan_engine.api:app",
        host=host,
        port=port,
        workers=workers,
        reload=reload,
        log_level="info"
    )
