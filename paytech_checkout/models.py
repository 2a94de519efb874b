import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SALE_COMPLETE = "sale_complete"


class CreatePaymentRequest(BaseModel):
    # Shape is checked by the initiator so bad identifiers map to invalid_request.
    user_id: Any = None
    item_id: Any = None


class CreatePaymentResponse(BaseModel):
    payment_url: str
    ref_command: str


class Item(BaseModel):
    id: str
    title: str
    price: Optional[Decimal] = None


class PendingPurchase(BaseModel):
    model_config = ConfigDict(frozen=True)

    ref_command: str
    user_id: str
    item_id: str
    amount: Decimal = Field(gt=0)
    status: Literal["pending"] = "pending"
    created_at: datetime


class ConfirmedPurchase(BaseModel):
    model_config = ConfigDict(frozen=True)

    ref_command: str
    user_id: str
    item_id: str
    amount: Decimal
    status: Literal["completed"] = "completed"
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    client_contact: Optional[str] = None
    raw_notification: Dict[str, Any]
    created_at: datetime
    updated_at: datetime


class CustomField(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    ref_command: str = Field(min_length=1)


class PayTechNotification(BaseModel):
    """IPN payload as PayTech posts it; unknown fields are kept for the audit copy."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event_type: Optional[str] = Field(None, alias="type_event")
    custom_field: Any = None
    api_key_digest: Optional[str] = Field(None, alias="api_key_sha256")
    api_secret_digest: Optional[str] = Field(None, alias="api_secret_sha256")
    payment_method: Optional[str] = None
    provider_reference: Optional[str] = Field(None, alias="ref_command")
    client_contact: Optional[str] = Field(None, alias="client_phone")

    @field_validator(
        "event_type", "api_key_digest", "api_secret_digest",
        "payment_method", "provider_reference", "client_contact",
        mode="before",
    )
    @classmethod
    def _as_text(cls, value):
        # Opaque to us; PayTech may send numbers (e.g. phone numbers) in JSON IPNs.
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float)):
            return str(value)
        return json.dumps(value, sort_keys=True, default=str)

    def raw(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class OutcomeKind(str, Enum):
    IGNORED = "ignored"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class OutcomeReason(str, Enum):
    NON_SALE_EVENT = "non_sale_event"
    MALFORMED_CUSTOM_FIELD = "malformed_custom_field"
    INVALID_SIGNATURE = "invalid_signature"
    NO_MATCHING_PENDING_PURCHASE = "no_matching_pending_purchase"
    ALREADY_CONFIRMED = "already_confirmed"
    PERSIST_FAILED = "persist_failed"


class Outcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: OutcomeKind
    reason: Optional[OutcomeReason] = None
    ref_command: Optional[str] = None

    @classmethod
    def ignored(cls, reason: OutcomeReason, ref_command: Optional[str] = None) -> "Outcome":
        return cls(kind=OutcomeKind.IGNORED, reason=reason, ref_command=ref_command)

    @classmethod
    def confirmed(cls, ref_command: str) -> "Outcome":
        return cls(kind=OutcomeKind.CONFIRMED, ref_command=ref_command)

    @classmethod
    def rejected(cls, reason: OutcomeReason, ref_command: Optional[str] = None) -> "Outcome":
        return cls(kind=OutcomeKind.REJECTED, reason=reason, ref_command=ref_command)
