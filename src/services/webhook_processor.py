"""Stripe webhook ingestion, payment status derivation and monitoring.

Every delivery is stored exactly once, keyed by the Stripe event id, and
processed at least once: a redelivery of an event whose processing
failed is processed again.

Payment status is recomputed on demand from the stored events for a
payment intent. Events are ordered by Stripe's own ``created`` timestamp
rather than by arrival, and folded through ``ALLOWED_TRANSITIONS`` so
a late or out-of-order event cannot move a payment backwards.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4

from src.api.middleware.error_handler import (
    APIError,
    NotFoundError,
    PaymentAmountMismatchError,
    WebhookProcessingError,
)
from src.core.config import get_settings
from src.core.realtime import ClientFactory, RowCallback, SupervisedSubscription
from src.core.store import DataStore, DuplicateKeyError, Gte, StoreError
from src.core.supabase import create_realtime_client, get_store
from src.models.webhook_event import WebhookEvent, WebhookEventCreate
from src.schemas.payment import PaymentStatus
from src.services.cart_repository import TRANSACTIONS_TABLE, CartRepository, to_decimal
from src.services.checkout_service import to_minor_units

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS_TABLE = "webhook_events"

# Event types that move a payment intent's status
EVENT_STATUS: dict[str, PaymentStatus] = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELED,
    "payment_intent.requires_action": PaymentStatus.REQUIRES_ACTION,
}

_ANY = frozenset(PaymentStatus)

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: _ANY,
    PaymentStatus.REQUIRES_ACTION: _ANY,
    PaymentStatus.FAILED: _ANY,
    PaymentStatus.SUCCEEDED: frozenset(
        {PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.CANCELED}
    ),
    PaymentStatus.CANCELED: frozenset({PaymentStatus.CANCELED}),
}

# Derived payment status -> cart transaction status
TRANSACTION_STATUS: dict[PaymentStatus, str] = {
    PaymentStatus.SUCCEEDED: "paid",
    PaymentStatus.FAILED: "failed",
    PaymentStatus.CANCELED: "canceled",
}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def extract_payment_intent_id(event: dict[str, Any]) -> str | None:
    """Find the payment intent an event refers to, if any."""
    obj = (event.get("data") or {}).get("object") or {}
    if obj.get("object") == "payment_intent":
        return obj.get("id")
    reference = obj.get("payment_intent")
    return reference if isinstance(reference, str) else None


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def event_order_key(row: dict[str, Any]) -> tuple[datetime, datetime, int]:
    """Sort key: provider timestamp, then arrival time, then row id."""
    arrived = _parse_timestamp(row.get("created_at")) or _EPOCH
    occurred = _parse_timestamp(row.get("provider_created_at")) or arrived
    return occurred, arrived, int(row.get("id") or 0)


def fold_status(rows: list[dict[str, Any]]) -> PaymentStatus:
    """Fold events, oldest first, through the transition table."""
    status = PaymentStatus.PENDING
    for row in sorted(rows, key=event_order_key):
        candidate = EVENT_STATUS.get(row.get("event_type", ""))
        if candidate is None:
            continue
        if candidate in ALLOWED_TRANSITIONS[status]:
            status = candidate
        else:
            logger.info(
                "Ignoring %s for %s: %s -> %s is not allowed",
                row.get("stripe_event_id"),
                row.get("payment_intent_id"),
                status.value,
                candidate.value,
            )
    return status


def latest_event(rows: list[dict[str, Any]], event_type: str) -> dict[str, Any] | None:
    """Newest event of a type, by the same ordering the status fold uses."""
    matching = [row for row in rows if row.get("event_type") == event_type]
    return max(matching, key=event_order_key, default=None)


def check_settled_amount(transaction: dict[str, Any], event: dict[str, Any] | None) -> None:
    """Check that a succeeded payment covers the transaction exactly.

    A transaction is paid only when the amount Stripe received equals its
    stored total, in minor units and the same currency.

    Raises:
        PaymentAmountMismatchError: If amount or currency differ.
    """
    payload = (event or {}).get("payload") or {}
    obj = (payload.get("data") or {}).get("object") or {}
    received = obj.get("amount_received", obj.get("amount"))
    received_currency = str(obj.get("currency") or "").lower()

    expected = to_minor_units(to_decimal(transaction.get("total_amount")))
    expected_currency = str(transaction.get("currency") or "").lower()

    if received != expected or received_currency != expected_currency:
        raise PaymentAmountMismatchError(
            str(obj.get("id") or transaction.get("payment_reference_id")),
            expected=f"{expected} {expected_currency}",
            received=f"{received} {received_currency}",
        )


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebhookProcessor:
    """Stores Stripe events and reconciles cart transactions from them."""

    def __init__(
        self,
        store: DataStore | None = None,
        repository: CartRepository | None = None,
        realtime_client_factory: ClientFactory = create_realtime_client,
    ) -> None:
        """Initialize the processor.

        Args:
            store: Data store to use; defaults to the Supabase-backed store.
            repository: Cart read path used to find transactions by intent.
            realtime_client_factory: Creates async clients for subscriptions.
        """
        self.store = store if store is not None else get_store()
        self.repository = repository or CartRepository(self.store)
        self.realtime_client_factory = realtime_client_factory
        self.settings = get_settings()

    async def record_event(self, event: dict[str, Any]) -> tuple[WebhookEvent, bool]:
        """Store an event once, keyed by its Stripe event id.

        Args:
            event: Verified Stripe event body.

        Returns:
            tuple: (stored_row, created). ``created`` is False for a redelivery.

        Raises:
            WebhookProcessingError: If the store cannot be written.
        """
        event_id = event["id"]
        created_at = event.get("created")
        row: WebhookEventCreate = {
            "stripe_event_id": event_id,
            "event_type": event.get("type", ""),
            "payment_intent_id": extract_payment_intent_id(event),
            "payload": event,
            "provider_created_at": _parse_timestamp(created_at).isoformat() if created_at else None,
            "processed": False,
        }

        try:
            stored = self.store.insert(WEBHOOK_EVENTS_TABLE, row)
        except DuplicateKeyError:
            existing = await self.get_event(event_id)
            if existing is None:
                raise WebhookProcessingError(event_id)
            logger.info("Duplicate delivery of webhook event %s", event_id)
            return existing, False
        except StoreError as e:
            logger.error("Failed to record webhook event %s: %s", event_id, e)
            raise WebhookProcessingError(event_id) from e

        logger.info("Recorded webhook event %s (%s)", event_id, row["event_type"])
        return stored, True

    async def get_event(self, stripe_event_id: str) -> WebhookEvent | None:
        """Get a stored event by its Stripe event id."""
        rows = self.store.select(WEBHOOK_EVENTS_TABLE, {"stripe_event_id": stripe_event_id}, limit=1)
        return rows[0] if rows else None

    async def derive_status(self, payment_intent_id: str) -> PaymentStatus:
        """Derive the current payment status of a payment intent.

        Returns ``pending`` when no relevant event has been stored yet.

        Args:
            payment_intent_id: Stripe PaymentIntent id.

        Returns:
            PaymentStatus: The derived status.
        """
        return fold_status(self._status_events(payment_intent_id))

    def _status_events(self, payment_intent_id: str) -> list[WebhookEvent]:
        return self.store.select(
            WEBHOOK_EVENTS_TABLE,
            {"payment_intent_id": payment_intent_id, "event_type": list(EVENT_STATUS)},
        )

    async def handle_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Record an event and reconcile the transaction it concerns.

        Args:
            event: Verified Stripe event body.

        Returns:
            dict: ``status`` ('received' or 'duplicate') and ``event_id``.

        Raises:
            WebhookProcessingError: If the event cannot be stored or reconciled.
        """
        row, created = await self.record_event(event)
        if not created and row.get("processed"):
            return {"status": "duplicate", "event_id": event["id"]}

        await self._process(row)
        return {"status": "received", "event_id": event["id"]}

    async def reprocess_event(self, stripe_event_id: str) -> WebhookEvent:
        """Run reconciliation again for a stored event.

        Raises:
            NotFoundError: If no such event is stored.
            WebhookProcessingError: If reconciliation fails again.
        """
        row = await self.get_event(stripe_event_id)
        if not row:
            raise NotFoundError(f"Webhook event {stripe_event_id} not found")

        await self._process(row)
        return await self.get_event(stripe_event_id) or row

    async def health(self, window_minutes: int | None = None) -> dict[str, Any]:
        """Processing aggregates over a trailing window.

        ``processed`` and ``failed`` are disjoint: a failed event keeps
        ``processed`` false, and a successful retry clears its error. The
        success rate is the processed share of all events in the window.

        Args:
            window_minutes: Window size; defaults to ``WEBHOOK_HEALTH_WINDOW_MINUTES``.

        Returns:
            dict: total, processed, failed, pending, success_rate, failure_rate.
        """
        window = window_minutes or self.settings.webhook_health_window_minutes
        since = datetime.now(timezone.utc) - timedelta(minutes=window)
        rows = self.store.select(
            WEBHOOK_EVENTS_TABLE,
            {"created_at": Gte(since)},
            columns="id, processed, processing_error",
        )

        total = len(rows)
        processed = sum(1 for row in rows if row.get("processed"))
        failed = sum(1 for row in rows if not row.get("processed") and row.get("processing_error"))

        return {
            "window_minutes": window,
            "total": total,
            "processed": processed,
            "failed": failed,
            "pending": total - processed - failed,
            "success_rate": processed / total if total else 1.0,
            "failure_rate": failed / total if total else 0.0,
        }

    async def list_events(
        self,
        limit: int = 50,
        event_type: str | None = None,
        processed: bool | None = None,
    ) -> list[WebhookEvent]:
        """List stored events, newest first."""
        filters: dict[str, Any] = {}
        if event_type:
            filters["event_type"] = event_type
        if processed is not None:
            filters["processed"] = processed

        return self.store.select(
            WEBHOOK_EVENTS_TABLE,
            filters,
            order_by="created_at",
            desc=True,
            limit=limit,
        )

    async def events_for_transaction(self, transaction_id: UUID | str) -> list[WebhookEvent]:
        """List the events for a transaction's payment intent, oldest first.

        Raises:
            NotFoundError: If the transaction does not exist.
        """
        transaction = await self.repository.get_transaction(transaction_id)
        if not transaction:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        payment_intent_id = transaction.get("payment_reference_id")
        if not payment_intent_id:
            return []

        rows = self.store.select(WEBHOOK_EVENTS_TABLE, {"payment_intent_id": payment_intent_id})
        return sorted(rows, key=event_order_key)

    async def subscribe_to_events(
        self,
        callback: RowCallback,
        event_type: str | None = None,
        processed: bool | None = None,
    ) -> SupervisedSubscription:
        """Push newly stored (and, optionally, updated) events to ``callback``.

        Args:
            callback: Called with each inserted or updated event row.
            event_type: Only forward inserts of this event type.
            processed: Also forward updates whose ``processed`` flag matches.

        Returns:
            SupervisedSubscription: Active subscription; call ``unsubscribe()`` to stop.
        """
        listeners: list[tuple[str, str | None]] = [
            ("INSERT", f"event_type=eq.{event_type}" if event_type else None),
        ]
        if processed is not None:
            listeners.append(("UPDATE", f"processed=eq.{str(processed).lower()}"))

        subscription = SupervisedSubscription(
            channel_name=f"webhook-events-{uuid4().hex[:12]}",
            table=WEBHOOK_EVENTS_TABLE,
            listeners=listeners,
            callback=callback,
            client_factory=self.realtime_client_factory,
        )
        return await subscription.start()

    async def _process(self, row: dict[str, Any]) -> None:
        event_id = row["stripe_event_id"]
        try:
            payment_intent_id = row.get("payment_intent_id")
            if row.get("event_type") in EVENT_STATUS and payment_intent_id:
                await self._reconcile(payment_intent_id)

            self.store.update(
                WEBHOOK_EVENTS_TABLE,
                {"processed": True, "processing_error": None, "processed_at": _utcnow_iso()},
                {"id": row["id"]},
            )
        except (StoreError, APIError) as e:
            logger.error("Failed to process webhook event %s: %s", event_id, e)
            self._mark_failed(row, str(e))
            raise WebhookProcessingError(event_id) from e

        logger.info("Processed webhook event %s", event_id)

    async def _reconcile(self, payment_intent_id: str) -> None:
        rows = self._status_events(payment_intent_id)
        status = fold_status(rows)
        target = TRANSACTION_STATUS.get(status)
        if target is None:
            return

        transaction = await self.repository.get_transaction_by_payment_intent(payment_intent_id)
        if not transaction:
            logger.warning("No transaction references payment intent %s", payment_intent_id)
            return
        if transaction.get("status") == target:
            return

        if status == PaymentStatus.SUCCEEDED:
            check_settled_amount(transaction, latest_event(rows, "payment_intent.succeeded"))

        self.store.update(
            TRANSACTIONS_TABLE,
            {"status": target, "updated_at": _utcnow_iso()},
            {"id": transaction["id"]},
        )
        logger.info(
            "Transaction %s moved %s -> %s (payment intent %s)",
            transaction["id"],
            transaction.get("status"),
            target,
            payment_intent_id,
        )

    def _mark_failed(self, row: dict[str, Any], error: str) -> None:
        try:
            self.store.update(WEBHOOK_EVENTS_TABLE, {"processing_error": error}, {"id": row["id"]})
        except StoreError as e:
            logger.error("Could not record processing error for event %s: %s", row["stripe_event_id"], e)
