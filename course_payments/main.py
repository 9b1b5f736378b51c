import json
from datetime import datetime
from functools import lru_cache
from typing import List, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from course_payments.config import LOG_LEVEL, PaymobConfig
from course_payments.database import dispose_engine, get_session, init_db
from course_payments.errors import (
    AlreadyEnrolledError,
    GatewayError,
    GatewayTimeoutError,
    InvalidTransitionError,
    PaymentNotFoundError,
    PendingPaymentExistsError,
    format_gateway_error,
)
from course_payments.gateway import PaymobClient
from course_payments.logs import configure_logging
from course_payments.messaging import close_rabbitmq, setup_rabbitmq
from course_payments.models import WebhookEventStatus
from course_payments.orchestrator import PaymentOrchestrator
from course_payments.schemas import (
    PaymentHandle,
    PaymentInitiateRequest,
    PaymentRead,
    StatusOverride,
    WebhookEventRead,
)
from course_payments.store import PaymentStore, SqlAlchemyPaymentStore
from course_payments.webhook import WebhookProcessor

logger = structlog.get_logger(__name__)

app = FastAPI(title="Course Payment Service")


@lru_cache
def get_config() -> PaymobConfig:
    return PaymobConfig.from_env()


async def get_store(db: AsyncSession = Depends(get_session)) -> PaymentStore:
    return SqlAlchemyPaymentStore(db)


async def get_gateway_client(config: PaymobConfig = Depends(get_config)):
    async with PaymobClient(config) as client:
        yield client


def get_orchestrator(
    config: PaymobConfig = Depends(get_config),
    store: PaymentStore = Depends(get_store),
    client: PaymobClient = Depends(get_gateway_client),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(config, store, client)


def get_webhook_processor(
    config: PaymobConfig = Depends(get_config),
    store: PaymentStore = Depends(get_store),
) -> WebhookProcessor:
    return WebhookProcessor(config, store)


@app.on_event("startup")
async def startup_event():
    configure_logging(LOG_LEVEL)
    # refuse to start with an incomplete PayMob configuration
    get_config()
    await init_db()
    await setup_rabbitmq()
    logger.info("startup_complete")


@app.on_event("shutdown")
async def shutdown_event():
    await close_rabbitmq()
    await dispose_engine()


@app.get("/health")
async def health(db: AsyncSession = Depends(get_session)):
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("health_check_failed", error=str(e))
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "ok"}


@app.post("/api/payments/initiate", response_model=PaymentHandle, status_code=201)
async def initiate_payment(
    payment_request: PaymentInitiateRequest,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.initiate_payment(
            payment_request, payment_request.course_id, payment_request.payment_method
        )
    except AlreadyEnrolledError as e:
        raise HTTPException(status_code=409, detail=e.user_message)
    except PendingPaymentExistsError as e:
        raise HTTPException(status_code=409, detail={
            "message": e.user_message,
            "payment_id": e.payment_id,
            "remaining_seconds": e.remaining_seconds,
            "can_cancel": True,
        })
    except GatewayTimeoutError as e:
        raise HTTPException(status_code=504, detail=format_gateway_error(e))
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=format_gateway_error(e))


@app.get("/api/payments/webhook")
async def webhook_health():
    return {"message": "PayMob webhook endpoint is active", "timestamp": datetime.utcnow().isoformat()}


@app.post("/api/payments/webhook")
async def payment_webhook(request: Request, processor: WebhookProcessor = Depends(get_webhook_processor)):
    body = await request.body()
    try:
        raw = json.loads(body)
    except ValueError:
        raw = body.decode("utf-8", errors="replace")
    outcome = await processor.handle_webhook(raw, request.query_params.get("hmac"))
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@app.get("/api/payments/{payment_id}", response_model=PaymentRead)
async def get_payment(payment_id: str, store: PaymentStore = Depends(get_store)):
    payment = await store.get_payment(payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return PaymentRead.model_validate(payment)


@app.post("/api/payments/{payment_id}/cancel", response_model=PaymentRead)
async def cancel_payment(payment_id: str, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    try:
        payment = await orchestrator.cancel_payment(payment_id)
    except PaymentNotFoundError:
        raise HTTPException(status_code=404, detail="Payment not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return PaymentRead.model_validate(payment)


@app.get("/api/admin/webhooks", response_model=List[WebhookEventRead])
async def list_webhook_events(
    status: Optional[WebhookEventStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    store: PaymentStore = Depends(get_store),
):
    events = await store.list_webhook_events(status=status, limit=limit)
    return [WebhookEventRead.model_validate(e) for e in events]


@app.post("/api/admin/webhooks/{event_id}/retry")
async def retry_webhook_event(event_id: str, processor: WebhookProcessor = Depends(get_webhook_processor)):
    outcome = await processor.retry_event(event_id)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@app.patch("/api/admin/payments/{payment_id}/status", response_model=PaymentRead)
async def override_payment_status(
    payment_id: str,
    override: StatusOverride,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    try:
        payment = await orchestrator.override_status(payment_id, override.status, override.reason)
    except PaymentNotFoundError:
        raise HTTPException(status_code=404, detail="Payment not found")
    return PaymentRead.model_validate(payment)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
