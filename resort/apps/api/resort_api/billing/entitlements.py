"""Entitlement fulfillment for verified, admitted processor events.

Transitions are guarded conditional updates (UPDATE ... WHERE status = <expected>);
a transition that matches zero rows lost to an earlier terminal transition and
is a no-op. The first terminal transition wins:

    success : pending → paid | payment_mismatch   (orders: cart → placed)
    cancel  : pending → canceled                  (orders: cart → canceled)
    refund  : pending|payment_mismatch|paid → refunded
              (orders: cart|payment_mismatch|placed|prepping|ready|picked_up → refunded)

A success arriving after a cancel or refund grants nothing.

Amounts are re-derived from current catalog state at fulfillment and compared
with the stored record (1-cent tolerance). Any disagreement fails closed to
payment_mismatch with no redemption code.

The issuer commits its own unit of work and returns the notifications to
publish; publishing happens after the event is marked processed.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union, assert_never

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from resort_api.billing.notifications import Notification, kitchen_topic, wallet_topic
from resort_api.billing.pricing import (
    PriceCalculator,
    entry_amount,
    ticket_amount,
    voucher_fee,
    within_tolerance,
)
from resort_api.billing.purposes import Purpose
from resort_api.billing.result import Err, ErrorKind, Ok, Result
from resort_api.db.models import (
    AuditLog,
    ChipVoucher,
    Event,
    EventTicket,
    Order,
    PokerEntry,
    PokerTourney,
)

logger = logging.getLogger(__name__)

REDEMPTION_WINDOW = timedelta(hours=2)
PICKUP_ETA = timedelta(minutes=15)
CODE_ATTEMPTS = 5
PICKUP_CODE_LENGTH = 6
PICKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits

AUDIT_ACTOR = "stripe_webhook"

PurchaseRecord = Union[EventTicket, PokerEntry, ChipVoucher, Order]

_MODELS: dict[Purpose, type] = {
    Purpose.EVENT: EventTicket,
    Purpose.TOURNEY: PokerEntry,
    Purpose.VOUCHER: ChipVoucher,
    Purpose.ORDER: Order,
}

_CODE_PREFIX: dict[Purpose, str] = {
    Purpose.EVENT: "TICKET",
    Purpose.TOURNEY: "TOURNEY",
    Purpose.VOUCHER: "VOUCHER",
}

_REFUNDABLE_ORDER_STATUSES = ("cart", "payment_mismatch", "placed", "prepping", "ready", "picked_up")


@dataclass(frozen=True)
class RoutingMetadata:
    """Routing data attached to the payment intent at creation."""

    user_id: str
    purpose: Purpose
    ref_id: str

    @classmethod
    def parse(cls, metadata: Optional[dict[str, Any]]) -> Result[RoutingMetadata]:
        metadata = metadata or {}
        user_id = metadata.get("user_id")
        raw_purpose = metadata.get("purpose")
        if not user_id or not raw_purpose:
            return Err(ErrorKind.INVALID_REQUEST, "Payment intent metadata missing user_id/purpose")
        try:
            purpose = Purpose(raw_purpose)
        except ValueError:
            return Err(ErrorKind.INVALID_REQUEST, f"Unknown purpose in metadata: {raw_purpose!r}")
        return Ok(cls(user_id=str(user_id), purpose=purpose, ref_id=str(metadata.get("ref_id") or "")))


@dataclass(frozen=True)
class FulfillmentOutcome:
    """Result of applying one processor event to a purchase record.

    status is the record's new status, or "ignored" (transition lost to an
    earlier one) / "missing" (no record for the intent).
    """

    status: str
    record_id: Optional[str] = None
    notifications: tuple[Notification, ...] = field(default_factory=tuple)


def generate_barcode(prefix: str) -> str:
    """{TYPE}-{unix millis}-{random}"""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def generate_pickup_code() -> str:
    return "".join(secrets.choice(PICKUP_CODE_ALPHABET) for _ in range(PICKUP_CODE_LENGTH))


def _pending_status(purpose: Purpose) -> str:
    return "cart" if purpose is Purpose.ORDER else "pending"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementIssuer:
    """Apply payment success, cancellation and refund to purchase records."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = _utcnow):
        self.db = db
        self.clock = clock

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def fulfill(
        self,
        routing: RoutingMetadata,
        intent_id: str,
        processor_amount: Optional[int] = None,
    ) -> Result[FulfillmentOutcome]:
        """payment_intent.succeeded → grant (or fail closed to payment_mismatch)."""
        try:
            return self._fulfill(routing, intent_id, processor_amount)
        except SQLAlchemyError as e:
            return self._storage_error("ENTITLEMENT_FULFILL_FAILED", intent_id, e)

    def cancel(self, routing: RoutingMetadata, intent_id: str) -> Result[FulfillmentOutcome]:
        """payment_intent.canceled → canceled (only from pending/cart)."""
        try:
            return self._cancel(routing, intent_id)
        except SQLAlchemyError as e:
            return self._storage_error("ENTITLEMENT_CANCEL_FAILED", intent_id, e)

    def refund(self, routing: RoutingMetadata, intent_id: str) -> Result[FulfillmentOutcome]:
        """charge.refunded → refunded, clearing the redemption code."""
        try:
            return self._refund(routing, intent_id)
        except SQLAlchemyError as e:
            return self._storage_error("ENTITLEMENT_REFUND_FAILED", intent_id, e)

    # ------------------------------------------------------------------
    # Success
    # ------------------------------------------------------------------

    def _fulfill(
        self,
        routing: RoutingMetadata,
        intent_id: str,
        processor_amount: Optional[int],
    ) -> Result[FulfillmentOutcome]:
        purpose = routing.purpose
        record = self._find(purpose, intent_id)
        if record is None:
            return Ok(self._missing(purpose, intent_id))

        pending = _pending_status(purpose)
        if record.status != pending:
            if record.status in ("canceled", "refunded"):
                # Success arriving after a terminal cancel/refund grants nothing
                logger.error(
                    "PAYMENT_SUCCEEDED_AFTER_CANCEL"
                    if record.status == "canceled"
                    else "PAYMENT_SUCCEEDED_AFTER_REFUND",
                    extra={"purpose": purpose.value, "record_id": record.id},
                )
            else:
                logger.info(
                    "ENTITLEMENT_TRANSITION_SKIPPED",
                    extra={"purpose": purpose.value, "record_id": record.id, "status": record.status},
                )
            return Ok(FulfillmentOutcome(status="ignored", record_id=record.id))

        stored_total = self._stored_total(purpose, record)
        expected_total = self._expected_total(purpose, record)
        mismatch_reason = self._mismatch_reason(
            routing, record, stored_total, expected_total, processor_amount
        )

        if mismatch_reason is not None:
            return Ok(self._mark_mismatch(
                purpose, record, intent_id, mismatch_reason,
                stored_total, expected_total, processor_amount,
            ))

        now = self.clock()
        values = self._grant_values(purpose, now)
        if not self._transition(purpose, record.id, (pending,), values):
            self.db.rollback()
            return Ok(FulfillmentOutcome(status="ignored", record_id=record.id))

        code = values.get("barcode") or values.get("pickup_code")
        self._audit(
            "entitlement_granted", purpose, record.id,
            {"stripe_payment_intent_id": intent_id, "amount": stored_total, "code": code},
        )
        self.db.commit()

        logger.info(
            "ENTITLEMENT_GRANTED",
            extra={"purpose": purpose.value, "record_id": record.id, "status": values["status"]},
        )

        notifications = [
            Notification(
                topic=wallet_topic(record.user_id),
                event="wallet_update",
                entity_id=record.id,
                type=self._granted_type(purpose),
            )
        ]
        if purpose is Purpose.ORDER:
            notifications.append(
                Notification(
                    topic=kitchen_topic(record.vendor_id),
                    event="order_placed",
                    entity_id=record.id,
                    type="order_placed",
                )
            )
        return Ok(FulfillmentOutcome(
            status=values["status"], record_id=record.id, notifications=tuple(notifications),
        ))

    def _mismatch_reason(
        self,
        routing: RoutingMetadata,
        record: PurchaseRecord,
        stored_total: int,
        expected_total: Optional[int],
        processor_amount: Optional[int],
    ) -> Optional[str]:
        if record.user_id != routing.user_id:
            return "user_mismatch"
        if expected_total is None:
            return "catalog_entity_missing"
        if not within_tolerance(expected_total, stored_total):
            return "catalog_price_changed"
        if routing.purpose is Purpose.VOUCHER and not self._within_voucher_policy(record.amount):
            return "voucher_outside_policy"
        if processor_amount is not None and not within_tolerance(processor_amount, stored_total):
            return "processor_amount_mismatch"
        return None

    def _mark_mismatch(
        self,
        purpose: Purpose,
        record: PurchaseRecord,
        intent_id: str,
        reason: str,
        stored_total: int,
        expected_total: Optional[int],
        processor_amount: Optional[int],
    ) -> FulfillmentOutcome:
        moved = self._transition(
            purpose, record.id, (_pending_status(purpose),), {"status": "payment_mismatch"}
        )
        if not moved:
            self.db.rollback()
            return FulfillmentOutcome(status="ignored", record_id=record.id)

        details = {
            "stripe_payment_intent_id": intent_id,
            "reason": reason,
            "stored_amount": stored_total,
            "expected_amount": expected_total,
            "processor_amount": processor_amount,
        }
        self._audit("payment_mismatch", purpose, record.id, details)
        self.db.commit()

        logger.error(
            "PAYMENT_AMOUNT_MISMATCH",
            extra={"purpose": purpose.value, "record_id": record.id, **details},
        )
        return FulfillmentOutcome(status="payment_mismatch", record_id=record.id)

    def _within_voucher_policy(self, amount: int) -> bool:
        minimum, maximum = PriceCalculator(self.db).voucher_bounds()
        return minimum <= amount <= maximum

    def _expected_total(self, purpose: Purpose, record: Any) -> Optional[int]:
        """Re-derive the charge from current catalog state; None if the entity is gone."""
        if purpose is Purpose.EVENT:
            event = self.db.get(Event, record.event_id)
            return None if event is None else ticket_amount(event, record.qty)
        if purpose is Purpose.TOURNEY:
            tourney = self.db.get(PokerTourney, record.tourney_id)
            return None if tourney is None else entry_amount(tourney)
        if purpose is Purpose.VOUCHER:
            return record.amount + voucher_fee(record.amount)
        if purpose is Purpose.ORDER:
            # Total was recomputed from menu prices and stored at intent creation
            return record.total
        assert_never(purpose)

    @staticmethod
    def _stored_total(purpose: Purpose, record: Any) -> int:
        if purpose is Purpose.VOUCHER:
            return record.amount + record.fee
        if purpose is Purpose.ORDER:
            return record.total
        return record.amount

    def _grant_values(self, purpose: Purpose, now: datetime) -> dict[str, Any]:
        if purpose is Purpose.EVENT:
            return {
                "status": "paid",
                "barcode": self._unique_barcode(purpose),
                "issued_at": now,
            }
        if purpose is Purpose.TOURNEY:
            return {
                "status": "paid",
                "barcode": self._unique_barcode(purpose),
                "issued_at": now,
                "will_call_window_start": now,
                "will_call_window_end": now + REDEMPTION_WINDOW,
            }
        if purpose is Purpose.VOUCHER:
            return {
                "status": "paid",
                "barcode": self._unique_barcode(purpose),
                "issued_at": now,
                "redeem_window_start": now,
                "redeem_window_end": now + REDEMPTION_WINDOW,
            }
        if purpose is Purpose.ORDER:
            return {
                "status": "placed",
                "pickup_code": self._unique_pickup_code(),
                "pickup_eta": now + PICKUP_ETA,
            }
        assert_never(purpose)

    @staticmethod
    def _granted_type(purpose: Purpose) -> str:
        return {
            Purpose.EVENT: "ticket_issued",
            Purpose.TOURNEY: "entry_issued",
            Purpose.VOUCHER: "voucher_issued",
            Purpose.ORDER: "order_placed",
        }[purpose]

    # ------------------------------------------------------------------
    # Cancel / refund
    # ------------------------------------------------------------------

    def _cancel(self, routing: RoutingMetadata, intent_id: str) -> Result[FulfillmentOutcome]:
        purpose = routing.purpose
        record = self._find(purpose, intent_id)
        if record is None:
            return Ok(self._missing(purpose, intent_id))

        return Ok(self._terminal(
            purpose, record, intent_id,
            from_statuses=(_pending_status(purpose),),
            values={"status": "canceled"},
            audit_event="payment_canceled",
        ))

    def _refund(self, routing: RoutingMetadata, intent_id: str) -> Result[FulfillmentOutcome]:
        purpose = routing.purpose
        record = self._find(purpose, intent_id)
        if record is None:
            return Ok(self._missing(purpose, intent_id))

        # A refund may overtake its success event; pending records are refunded too
        if purpose is Purpose.ORDER:
            from_statuses: tuple[str, ...] = _REFUNDABLE_ORDER_STATUSES
            values: dict[str, Any] = {"status": "refunded", "pickup_code": None}
        else:
            from_statuses = ("pending", "payment_mismatch", "paid")
            values = {"status": "refunded", "barcode": None}

        return Ok(self._terminal(
            purpose, record, intent_id,
            from_statuses=from_statuses,
            values=values,
            audit_event="payment_refunded",
        ))

    def _terminal(
        self,
        purpose: Purpose,
        record: PurchaseRecord,
        intent_id: str,
        *,
        from_statuses: tuple[str, ...],
        values: dict[str, Any],
        audit_event: str,
    ) -> FulfillmentOutcome:
        previous = record.status
        if not self._transition(purpose, record.id, from_statuses, values):
            self.db.rollback()
            logger.info(
                "ENTITLEMENT_TRANSITION_SKIPPED",
                extra={
                    "purpose": purpose.value,
                    "record_id": record.id,
                    "status": previous,
                    "requested": values["status"],
                },
            )
            return FulfillmentOutcome(status="ignored", record_id=record.id)

        self._audit(
            audit_event, purpose, record.id,
            {"stripe_payment_intent_id": intent_id, "previous_status": previous},
        )
        self.db.commit()

        logger.info(
            "ENTITLEMENT_STATUS_CHANGED",
            extra={"purpose": purpose.value, "record_id": record.id, "status": values["status"]},
        )
        notification = Notification(
            topic=wallet_topic(record.user_id),
            event="wallet_update",
            entity_id=record.id,
            type=audit_event,
        )
        return FulfillmentOutcome(
            status=values["status"], record_id=record.id, notifications=(notification,),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _find(self, purpose: Purpose, intent_id: str) -> Optional[PurchaseRecord]:
        model = _MODELS[purpose]
        return self.db.execute(
            select(model).where(model.stripe_payment_intent_id == intent_id)
        ).scalar_one_or_none()

    def _transition(
        self,
        purpose: Purpose,
        record_id: str,
        from_statuses: tuple[str, ...],
        values: dict[str, Any],
    ) -> bool:
        model = _MODELS[purpose]
        result = self.db.execute(
            update(model)
            .where(model.id == record_id, model.status.in_(from_statuses))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _unique_barcode(self, purpose: Purpose) -> str:
        model = _MODELS[purpose]
        prefix = _CODE_PREFIX[purpose]
        for _ in range(CODE_ATTEMPTS):
            code = generate_barcode(prefix)
            taken = self.db.execute(
                select(model.id).where(model.barcode == code)
            ).first()
            if taken is None:
                return code
        raise RuntimeError(f"Could not generate a unique {prefix} barcode")

    def _unique_pickup_code(self) -> str:
        for _ in range(CODE_ATTEMPTS):
            code = generate_pickup_code()
            taken = self.db.execute(
                select(Order.id).where(Order.pickup_code == code)
            ).first()
            if taken is None:
                return code
        raise RuntimeError("Could not generate a unique pickup code")

    def _audit(self, event_type: str, purpose: Purpose, record_id: str, details: dict[str, Any]) -> None:
        self.db.add(
            AuditLog(
                event_type=event_type,
                resource_type=_MODELS[purpose].__tablename__,
                resource_id=record_id,
                actor=AUDIT_ACTOR,
                details=details,
            )
        )

    @staticmethod
    def _missing(purpose: Purpose, intent_id: str) -> FulfillmentOutcome:
        # Intent created but the pending insert never landed
        logger.error(
            "PURCHASE_RECORD_MISSING",
            extra={"purpose": purpose.value, "stripe_payment_intent_id": intent_id},
        )
        return FulfillmentOutcome(status="missing")

    def _storage_error(self, code: str, intent_id: str, exc: Exception) -> Err:
        self.db.rollback()
        logger.error(
            code,
            extra={"stripe_payment_intent_id": intent_id, "error_type": type(exc).__name__},
            exc_info=True,
        )
        return Err(ErrorKind.STORAGE_ERROR, "Failed to update purchase record")
