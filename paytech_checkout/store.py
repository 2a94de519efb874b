"""
Storage contract for purchases.

Every method opens its own connection through ``get_conn`` and re-reads from
the database; nothing is cached. Driver failures surface as ``StorageError``
and uniqueness violations as ``DuplicateRecordError``, so callers never see
psycopg types. Lookups return ``None`` for "not found".
"""
from datetime import timedelta
from typing import Optional

import psycopg
import structlog
from psycopg import errors as pg_errors
from psycopg.types.json import Jsonb

from .db import get_conn
from .errors import DuplicateRecordError, StorageError
from .models import ConfirmedPurchase, Item, PendingPurchase

logger = structlog.get_logger(__name__)


class PurchaseStore:
    def __init__(self, conn_factory=get_conn):
        self._conn_factory = conn_factory

    def get_item(self, item_id: str) -> Optional[Item]:
        try:
            with self._conn_factory() as conn:
                row = conn.execute(
                    "SELECT id, title, price FROM items WHERE id = %s",
                    (item_id,),
                ).fetchone()
        except psycopg.Error as e:
            raise StorageError("Failed to read item") from e
        return Item(**row) if row else None

    def get_pending(self, ref_command: str) -> Optional[PendingPurchase]:
        try:
            with self._conn_factory() as conn:
                row = conn.execute(
                    "SELECT ref_command, user_id, item_id, amount, status, created_at "
                    "FROM purchases_pending WHERE ref_command = %s",
                    (ref_command,),
                ).fetchone()
        except psycopg.Error as e:
            raise StorageError("Failed to read pending purchase") from e
        return PendingPurchase(**row) if row else None

    def insert_pending(self, user_id: str, item_id: str, amount, ref_command: str) -> PendingPurchase:
        try:
            with self._conn_factory() as conn:
                row = conn.execute(
                    "INSERT INTO purchases_pending(ref_command, user_id, item_id, amount, status) "
                    "VALUES (%s, %s, %s, %s, 'pending') "
                    "RETURNING ref_command, user_id, item_id, amount, status, created_at",
                    (ref_command, user_id, item_id, amount),
                ).fetchone()
        except pg_errors.UniqueViolation as e:
            raise DuplicateRecordError("Pending purchase already exists") from e
        except psycopg.Error as e:
            raise StorageError("Failed to create pending purchase") from e
        return PendingPurchase(**row)

    def insert_confirmed(self, purchase: ConfirmedPurchase) -> None:
        try:
            with self._conn_factory() as conn:
                conn.execute(
                    "INSERT INTO purchases(ref_command, user_id, item_id, amount, status, "
                    "payment_method, payment_reference, client_contact, raw_notification, "
                    "created_at, updated_at) "
                    "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                    (
                        purchase.ref_command,
                        purchase.user_id,
                        purchase.item_id,
                        purchase.amount,
                        purchase.status,
                        purchase.payment_method,
                        purchase.payment_reference,
                        purchase.client_contact,
                        Jsonb(purchase.raw_notification),
                        purchase.created_at,
                        purchase.updated_at,
                    ),
                )
        except pg_errors.UniqueViolation as e:
            raise DuplicateRecordError("Purchase already confirmed") from e
        except psycopg.Error as e:
            raise StorageError("Failed to insert confirmed purchase") from e

    def delete_pending(self, ref_command: str) -> bool:
        try:
            with self._conn_factory() as conn:
                cur = conn.execute(
                    "DELETE FROM purchases_pending WHERE ref_command = %s",
                    (ref_command,),
                )
                deleted = cur.rowcount > 0
        except psycopg.Error as e:
            raise StorageError("Failed to delete pending purchase") from e
        return deleted

    def purge_stale_pending(self, max_age: timedelta) -> int:
        """
        Delete pending rows older than ``max_age``.

        Rows are left behind when the provider call fails after the pending
        insert committed. Meant to be run by an external scheduler.
        """
        try:
            with self._conn_factory() as conn:
                cur = conn.execute(
                    "DELETE FROM purchases_pending WHERE created_at < NOW() - %s",
                    (max_age,),
                )
                purged = cur.rowcount
        except psycopg.Error as e:
            raise StorageError("Failed to purge stale pending purchases") from e
        logger.info("stale_pending_purged", count=purged, max_age_seconds=max_age.total_seconds())
        return purged
