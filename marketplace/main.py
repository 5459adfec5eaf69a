"""
FastAPI application: payment webhooks, partner payouts, operator endpoints,
health and metrics.
"""
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from marketplace.api.routes import access, admin, health, partner, webhooks
from marketplace.core.config import settings
from marketplace.core.logging import configure_logging
from marketplace.utils.metrics import router as metrics_router

configure_logging()
logger = logging.getLogger("marketplace.http")

app = FastAPI(
    title="Marketplace Payments API",
    description="Payment webhooks, referral commissions and partner payouts",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list or ["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get(settings.request_id_header) or uuid4().hex
    started = time.monotonic()
    response = await call_next(request)
    response.headers[settings.request_id_header] = request_id
    logger.info(
        "http_request",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "latency_ms": int((time.monotonic() - started) * 1000),
        },
    )
    return response


app.include_router(health.router)
app.include_router(webhooks.router)
app.include_router(partner.router)
app.include_router(access.router)
app.include_router(admin.router)
app.include_router(metrics_router)
