from functools import lru_cache
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .errors import CheckoutError, InvalidRequest
from .initiator import PaymentInitiator
from .logging_config import configure_logging
from .models import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    Outcome,
    OutcomeKind,
    OutcomeReason,
    PayTechNotification,
)
from .provider import PayTechClient
from .reconciler import NotificationReconciler
from .settings import LOG_LEVEL, PaymentConfig, load_payment_config
from .store import PurchaseStore

configure_logging(LOG_LEVEL)
logger = structlog.get_logger(__name__)

app = FastAPI(title="PayTech Checkout", version="0.1.0")

REJECTION_STATUS = {
    OutcomeReason.MALFORMED_CUSTOM_FIELD: 400,
    OutcomeReason.INVALID_SIGNATURE: 401,
    OutcomeReason.NO_MATCHING_PENDING_PURCHASE: 404,
    OutcomeReason.ALREADY_CONFIRMED: 409,
    OutcomeReason.PERSIST_FAILED: 500,
}


@lru_cache
def get_config() -> PaymentConfig:
    return load_payment_config()


def get_store() -> PurchaseStore:
    return PurchaseStore()


def get_provider(config: PaymentConfig = Depends(get_config)) -> PayTechClient:
    return PayTechClient(config)


def get_initiator(
    config: PaymentConfig = Depends(get_config),
    store=Depends(get_store),
    provider=Depends(get_provider),
) -> PaymentInitiator:
    return PaymentInitiator(config, store, provider)


def get_reconciler(
    config: PaymentConfig = Depends(get_config),
    store=Depends(get_store),
) -> NotificationReconciler:
    return NotificationReconciler(config, store)


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    if request.url.path == "/create-payment":
        return await checkout_error_handler(request, InvalidRequest("user_id and item_id are required"))
    return await request_validation_exception_handler(request, exc)


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/create-payment", response_model=CreatePaymentResponse)
async def create_payment(
    req: Optional[CreatePaymentRequest] = None,
    initiator: PaymentInitiator = Depends(get_initiator),
):
    req = req or CreatePaymentRequest()
    return await initiator.initiate(req.user_id, req.item_id)


async def read_notification(request: Request) -> Dict[str, Any]:
    """PayTech posts IPNs form-encoded; JSON is accepted too."""
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return dict(form)
    data = await request.json()
    if not isinstance(data, dict):
        raise ValueError("notification body must be an object")
    return data


def outcome_response(outcome: Outcome) -> JSONResponse:
    if outcome.kind == OutcomeKind.CONFIRMED:
        return JSONResponse(status_code=200, content={"status": "confirmed", "success": True})
    body = {"status": outcome.kind.value, "reason": outcome.reason.value}
    if outcome.kind == OutcomeKind.IGNORED:
        return JSONResponse(status_code=200, content=body)
    return JSONResponse(status_code=REJECTION_STATUS[outcome.reason], content=body)


@app.post("/ipn")
async def paytech_ipn(request: Request, reconciler: NotificationReconciler = Depends(get_reconciler)):
    """
    Redelivery-safe: a reference is confirmed once; later deliveries are
    rejected without touching the confirmed row.
    """
    try:
        notification = PayTechNotification.model_validate(await read_notification(request))
    except (ValueError, ValidationError):
        logger.warning("ipn_malformed_payload")
        return JSONResponse(status_code=400, content={"status": "rejected", "reason": "malformed_payload"})

    outcome = await run_in_threadpool(reconciler.reconcile, notification)
    return outcome_response(outcome)
