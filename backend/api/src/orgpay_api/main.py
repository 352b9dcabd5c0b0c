"""FastAPI application for the organization payments API.

Routes are mounted under /api to match the CloudFront behavior
(/api/* -> API Gateway). Lambda invokes `handler`; local development uses
run_server().
"""

import os
from datetime import UTC, datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

from orgpay.utils.logging import configure_logging, get_logger
from orgpay_api.exceptions import register_exception_handlers
from orgpay_api.middleware.correlation import CorrelationIdMiddleware
from orgpay_api.models.common import HealthResponse
from orgpay_api.routes.organizations import router as organizations_router
from orgpay_api.routes.payments import router as payments_router
from orgpay_api.routes.webhooks import router as webhooks_router

configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title="Organization Payments API",
    description="Donations, subscriptions and Stripe webhook reconciliation",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv(
        "CORS_ALLOW_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
    ).split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

register_exception_handlers(app)

app.include_router(payments_router, prefix="/api")
app.include_router(organizations_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")


@app.get("/api/ping", response_model=HealthResponse, tags=["health"])
async def ping() -> HealthResponse:
    """Health check at /api/ping."""
    return HealthResponse(timestamp=datetime.now(UTC).isoformat())


# Lambda handler - Mangum wraps FastAPI for AWS Lambda + API Gateway
handler = Mangum(app, lifespan="off")


def run_server(host: str = "0.0.0.0", port: int = 8080, reload: bool = True) -> None:
    """Run the API locally with uvicorn.

    Args:
        host: Host to bind to (default: 0.0.0.0)
        port: Port to listen on (default: 8080)
        reload: Enable hot reload for development (default: True)
    """
    import uvicorn

    if reload:
        # Reload mode needs an import string
        uvicorn.run(
            "orgpay_api.main:app",
            host=host,
            port=port,
            reload=True,
            reload_dirs=["api/src", "shared/src"],
        )
    else:
        uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
