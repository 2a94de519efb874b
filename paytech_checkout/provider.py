from typing import Any, Dict, Optional, Tuple

import httpx
import structlog

from .errors import UpstreamError
from .settings import PAYTECH_API_URL, PROVIDER_TIMEOUT_SECONDS, PaymentConfig

logger = structlog.get_logger(__name__)


class PayTechClient:
    """Single-shot PayTech payment request. Retrying is left to the caller."""

    def __init__(self, config: PaymentConfig, url: str = PAYTECH_API_URL,
                 timeout: float = PROVIDER_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def request_payment(self, payload: dict) -> Tuple[int, Dict[str, Any]]:
        headers = {
            "API_KEY": self.config.api_key or "",
            "API_SECRET": self.config.api_secret or "",
        }
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                r = await client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            logger.error("paytech_unreachable", error=type(e).__name__)
            raise UpstreamError("Payment provider unavailable") from e

        try:
            body = r.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        return r.status_code, body
