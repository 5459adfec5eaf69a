"""
Inbound payment webhooks: POST /webhooks/{stripe|yookassa|coingate}.

Responses:
  200 {received, orderId, processingTimeMs}
  400 {error} missing signature, malformed body, or processing failure (provider retries)
  401 {error} signature mismatch
  500 {error} unexpected error
Every failure is written to webhook_events in its own transaction.
"""
import json
import logging
import time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from marketplace.core.errors import MarketplaceError, SignatureError
from marketplace.db.session import get_db
from marketplace.services.webhooks.events import parse_event
from marketplace.services.webhooks.service import WebhookProcessor
from marketplace.services.webhooks.signature import SIGNATURE_HEADERS, require_valid_signature
from marketplace.utils.metrics import webhook_duration_seconds, webhooks_received_total

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _record_failure(
    db: Session,
    provider: str,
    event_type: str,
    reference: str | None,
    payload: dict[str, Any],
    error: str,
    started: float,
) -> None:
    try:
        WebhookProcessor(db).log_webhook_event(
            provider, event_type, reference, payload, False, error, _elapsed_ms(started)
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("webhook_event_log_failed", extra={"provider": provider, "order_id": reference})


def _handle(provider: str, body: bytes, signature: str | None, db: Session) -> JSONResponse:
    started = time.monotonic()

    try:
        require_valid_signature(provider, body, signature)
    except SignatureError as exc:
        webhooks_received_total.labels(provider=provider, outcome="rejected").inc()
        _record_failure(db, provider, "signature", None, {}, str(exc), started)
        return JSONResponse({"error": str(exc)}, status_code=400 if exc.missing else 401)

    try:
        raw = json.loads(body)
        event = parse_event(provider, raw)
    except ValueError as exc:
        webhooks_received_total.labels(provider=provider, outcome="failed").inc()
        logger.warning("webhook_payload_invalid", extra={"provider": provider, "error": str(exc)[:500]})
        _record_failure(db, provider, "invalid_payload", None, {}, str(exc)[:1000], started)
        return JSONResponse({"error": "Invalid webhook payload"}, status_code=400)

    processor = WebhookProcessor(db)
    try:
        result = processor.process(event)
        processor.log_webhook_event(
            provider, event.event_type, event.payment_ref, raw, True, None, _elapsed_ms(started)
        )
        db.commit()
    except MarketplaceError as exc:
        db.rollback()
        webhooks_received_total.labels(provider=provider, outcome="failed").inc()
        logger.error(
            "webhook_processing_failed",
            extra={
                "provider": provider,
                "event_type": event.event_type,
                "order_id": event.payment_ref,
                "error": str(exc),
                "duration_ms": _elapsed_ms(started),
            },
        )
        _record_failure(db, provider, event.event_type, event.payment_ref, raw, str(exc), started)
        return JSONResponse({"error": "Webhook processing failed"}, status_code=400)
    except Exception as exc:
        db.rollback()
        webhooks_received_total.labels(provider=provider, outcome="error").inc()
        logger.exception(
            "webhook_unexpected_error",
            extra={
                "provider": provider,
                "event_type": event.event_type,
                "order_id": event.payment_ref,
                "duration_ms": _elapsed_ms(started),
            },
        )
        _record_failure(db, provider, event.event_type, event.payment_ref, raw, repr(exc), started)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    elapsed = _elapsed_ms(started)
    webhooks_received_total.labels(
        provider=provider, outcome="processed" if result.processed else "unhandled"
    ).inc()
    webhook_duration_seconds.labels(provider=provider).observe(elapsed / 1000)
    logger.info(
        "webhook_processed",
        extra={
            "provider": provider,
            "event_type": event.event_type,
            "order_id": event.payment_ref,
            "payment_id": result.payment_id,
            "duration_ms": elapsed,
        },
    )
    return JSONResponse({"received": True, "orderId": event.payment_ref, "processingTimeMs": elapsed})


@router.post("/{provider}")
async def receive_webhook(provider: str, request: Request, db: Session = Depends(get_db)):
    if provider not in SIGNATURE_HEADERS:
        raise HTTPException(status_code=404, detail="Unknown webhook provider")
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADERS[provider])
    return await run_in_threadpool(_handle, provider, body, signature, db)
