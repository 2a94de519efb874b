"""
IPN reconciliation.

Per ``ref_command`` a purchase moves NO_RECORD -> PENDING -> CONFIRMED and
never leaves CONFIRMED. The transition is an insert into ``purchases``
followed by a delete from ``purchases_pending``; the insert goes first so a
failure can only leave a recoverable pending row behind, never lose a
confirmation. Two guards keep it at-most-once under redelivery: the pending
row lookup, and the unique constraint on ``purchases.ref_command``.
"""
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Optional

import structlog
from pydantic import ValidationError

from .errors import DuplicateRecordError, StorageError
from .models import (
    SALE_COMPLETE,
    ConfirmedPurchase,
    CustomField,
    Outcome,
    OutcomeReason,
    PayTechNotification,
    PendingPurchase,
)
from .settings import PaymentConfig

logger = structlog.get_logger(__name__)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def decode_custom_field(raw) -> Optional[CustomField]:
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(raw, dict):
        return None
    try:
        return CustomField.model_validate(raw)
    except ValidationError:
        return None


class NotificationReconciler:
    def __init__(self, config: PaymentConfig, store):
        self.store = store
        self._key_digest = sha256_hex(config.api_key) if config.api_key else None
        self._secret_digest = sha256_hex(config.api_secret) if config.api_secret else None

    def verify(self, notification: PayTechNotification) -> bool:
        if self._key_digest is None or self._secret_digest is None:
            logger.error("paytech_credentials_missing")
            return False
        key_ok = _digest_equal(self._key_digest, notification.api_key_digest)
        secret_ok = _digest_equal(self._secret_digest, notification.api_secret_digest)
        return key_ok and secret_ok

    def reconcile(self, notification: PayTechNotification) -> Outcome:
        custom = decode_custom_field(notification.custom_field)
        if custom is None:
            logger.warning("ipn_rejected", reason=OutcomeReason.MALFORMED_CUSTOM_FIELD.value)
            return Outcome.rejected(OutcomeReason.MALFORMED_CUSTOM_FIELD)
        ref_command = custom.ref_command
        log = logger.bind(ref_command=ref_command)

        if notification.event_type != SALE_COMPLETE:
            log.info("ipn_ignored", event_type=notification.event_type)
            return Outcome.ignored(OutcomeReason.NON_SALE_EVENT, ref_command)

        if not self.verify(notification):
            log.warning("ipn_rejected", reason=OutcomeReason.INVALID_SIGNATURE.value)
            return Outcome.rejected(OutcomeReason.INVALID_SIGNATURE, ref_command)

        try:
            pending = self.store.get_pending(ref_command)
        except StorageError:
            log.exception("pending_lookup_failed")
            return Outcome.rejected(OutcomeReason.PERSIST_FAILED, ref_command)
        if pending is None:
            log.warning("ipn_rejected", reason=OutcomeReason.NO_MATCHING_PENDING_PURCHASE.value)
            return Outcome.rejected(OutcomeReason.NO_MATCHING_PENDING_PURCHASE, ref_command)

        confirmed = build_confirmed(pending, notification)

        try:
            self.store.insert_confirmed(confirmed)
        except DuplicateRecordError:
            # Another delivery already committed; the pending row is stale.
            log.info("ipn_duplicate_confirmation")
            self._remove_pending(ref_command, log)
            return Outcome.rejected(OutcomeReason.ALREADY_CONFIRMED, ref_command)
        except StorageError:
            log.exception("confirmed_insert_failed")
            return Outcome.rejected(OutcomeReason.PERSIST_FAILED, ref_command)

        self._remove_pending(ref_command, log)
        log.info("purchase_confirmed", amount=str(confirmed.amount))
        return Outcome.confirmed(ref_command)

    def _remove_pending(self, ref_command: str, log) -> None:
        # The confirmation is already durable; a leftover row is cleared on redelivery.
        try:
            self.store.delete_pending(ref_command)
        except StorageError:
            log.exception("pending_delete_failed")


def build_confirmed(pending: PendingPurchase, notification: PayTechNotification) -> ConfirmedPurchase:
    return ConfirmedPurchase(
        ref_command=pending.ref_command,
        user_id=pending.user_id,
        item_id=pending.item_id,
        amount=pending.amount,
        payment_method=notification.payment_method,
        payment_reference=notification.provider_reference,
        client_contact=notification.client_contact,
        raw_notification=notification.raw(),
        created_at=pending.created_at,
        updated_at=datetime.now(timezone.utc),
    )


def _digest_equal(expected: str, received: Optional[str]) -> bool:
    if not isinstance(received, str):
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))
