"""DisputeRail Gateway - Main application entry point."""

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shared.config import DATA_DIR, LOG_LEVEL, init_data_dirs
from shared.middleware import CorrelationMiddleware, ReviewerAccessMiddleware, MetricsMiddleware
from dispute_gateway.dependencies import DisputeServices, build_services
from dispute_gateway.routers import audit, disputes, health, review, webhooks

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)


def create_app(services: Optional[DisputeServices] = None) -> FastAPI:
    services = services or build_services(DATA_DIR)

    app = FastAPI(
        title="DisputeRail Gateway",
        version="1.0.0",
        description="QR point-of-sale dispute lifecycle and Network reconciliation",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Custom middleware (outermost first in execution order)
    app.add_middleware(MetricsMiddleware, data_dir=services.data_dir)
    app.add_middleware(ReviewerAccessMiddleware)
    app.add_middleware(CorrelationMiddleware)

    @app.on_event("startup")
    async def startup():
        init_data_dirs(services.data_dir)
        logging.getLogger("disputerail").info("Dispute Gateway started, data dirs initialized")

    app.include_router(disputes.router, prefix="/disputes", tags=["Disputes"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(review.router, prefix="/review", tags=["Review"])
    app.include_router(audit.router, prefix="/audit", tags=["Audit"])
    app.include_router(health.router, tags=["Health"])
    return app


app = create_app()
