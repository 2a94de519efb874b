import json
import secrets
import time
from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.parse import quote

import structlog

from .errors import (
    ConfigurationError,
    InvalidPrice,
    InvalidRequest,
    NotFound,
    UpstreamError,
    UpstreamProtocolError,
)
from .models import CreatePaymentResponse
from .settings import PaymentConfig

logger = structlog.get_logger(__name__)

REDIRECT_KEYS = ("redirect_url", "url", "payment_url")


def new_ref_command(item_id: str) -> str:
    """``<item_id>-<digits>``: nanosecond clock plus three random digits."""
    return f"{item_id}-{time.time_ns()}{secrets.randbelow(1000):03d}"


class PaymentInitiator:
    def __init__(self, config: PaymentConfig, store, provider):
        self.config = config
        self.store = store
        self.provider = provider

    async def initiate(self, user_id, item_id) -> CreatePaymentResponse:
        user_id, item_id = _identifier(user_id), _identifier(item_id)
        if user_id is None or item_id is None:
            raise InvalidRequest("user_id and item_id are required")

        missing = self.config.missing()
        if missing:
            logger.error("paytech_config_missing", missing=missing)
            raise ConfigurationError("Payment provider is not configured")

        item = self.store.get_item(item_id)
        if item is None:
            raise NotFound("Item not found")
        amount = _positive_price(item.price)

        # Pending row first: no outbound request without a record to reconcile against.
        ref_command = new_ref_command(item_id)
        self.store.insert_pending(user_id, item_id, amount, ref_command)
        logger.info("pending_purchase_created", ref_command=ref_command, item_id=item_id, user_id=user_id)

        payload = self.build_payload(item.id, item.title, amount, ref_command)
        status_code, body = await self.provider.request_payment(payload)

        if not 200 <= status_code < 300:
            logger.error("paytech_request_failed", ref_command=ref_command, status_code=status_code, body=body)
            raise UpstreamError("Payment provider request failed")

        payment_url = next(
            (body[k] for k in REDIRECT_KEYS if isinstance(body.get(k), str) and body[k].strip()),
            None,
        )
        if not payment_url:
            logger.error("paytech_missing_redirect", ref_command=ref_command, body=body)
            raise UpstreamProtocolError("Payment provider returned no payment URL")

        return CreatePaymentResponse(payment_url=payment_url, ref_command=ref_command)

    def build_payload(self, item_id: str, title: str, amount: Decimal, ref_command: str) -> dict:
        base = self.config.frontend_url.rstrip("/")
        ref = quote(ref_command, safe="")
        return {
            "item_name": title,
            "item_price": str(amount),
            "command_name": f"Purchase {item_id}",
            "ref_command": ref_command,
            "currency": self.config.currency,
            "env": self.config.env,
            "ipn_url": self.config.ipn_url,
            "success_url": f"{base}/payment/success?ref={ref}",
            "cancel_url": f"{base}/payment/cancel?ref={ref}",
            "custom_field": json.dumps({"ref_command": ref_command}),
        }


def _identifier(value) -> Optional[str]:
    """Non-blank string, or an integer key rendered as one."""
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _positive_price(price) -> Decimal:
    if price is None:
        raise InvalidPrice("Item has no price")
    try:
        amount = Decimal(str(price))
    except InvalidOperation:
        raise InvalidPrice("Item price is not a number")
    if not amount.is_finite() or amount <= 0:
        raise InvalidPrice("Item price must be positive")
    return amount
