"""Staff-side redemption of issued entitlements.

- TICKET-*  : check-in opens 2h before the event starts, closes 1h after
- TOURNEY-* : within the entry's will-call window
- VOUCHER-* : within the voucher's redeem window
- pickup code: order must be 'ready'

Each redemption is a guarded conditional update (paid → redeemed,
ready → picked_up), so two scanners racing on the same code redeem it once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from resort_api.billing.notifications import Notification, kitchen_topic, wallet_topic
from resort_api.billing.result import Err, ErrorKind, Ok, Result
from resort_api.db.models import AuditLog, ChipVoucher, Event, EventTicket, Order, PokerEntry

logger = logging.getLogger(__name__)

CHECK_IN_OPENS_BEFORE = timedelta(hours=2)
CHECK_IN_CLOSES_AFTER = timedelta(hours=1)


@dataclass(frozen=True)
class Redemption:
    record_id: str
    status: str
    redeemed_at: datetime
    notifications: tuple[Notification, ...] = field(default_factory=tuple)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; stored values are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RedemptionService:
    """Consume redemption codes on behalf of a staff member."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = _utcnow):
        self.db = db
        self.clock = clock

    def redeem_ticket(self, barcode: str, staff_id: str) -> Result[Redemption]:
        if not barcode.startswith("TICKET-"):
            return Err(ErrorKind.INVALID_REQUEST, "Invalid ticket barcode format")

        try:
            ticket = self._find_paid(EventTicket, barcode)
            if ticket is None:
                return Err(ErrorKind.NOT_FOUND, "Invalid or already redeemed ticket")

            event = self.db.get(Event, ticket.event_id)
            if event is None:
                return Err(ErrorKind.NOT_FOUND, "Event not found")

            now = self.clock()
            starts_at = _aware(event.starts_at)
            if starts_at is not None:
                if now < starts_at - CHECK_IN_OPENS_BEFORE:
                    return Err(
                        ErrorKind.REDEMPTION_WINDOW_CLOSED,
                        "Event check-in opens 2 hours before start time",
                        {"starts_at": starts_at.isoformat()},
                    )
                if now > starts_at + CHECK_IN_CLOSES_AFTER:
                    return Err(
                        ErrorKind.REDEMPTION_WINDOW_CLOSED,
                        "Event has ended, ticket no longer valid",
                        {"starts_at": starts_at.isoformat()},
                    )

            return self._redeem(
                EventTicket, ticket, staff_id, now,
                audit_event="ticket_redeemed",
                details={"barcode": barcode, "event_id": ticket.event_id},
            )
        except SQLAlchemyError as e:
            return self._storage_error("TICKET_REDEEM_FAILED", e)

    def redeem_entry(self, barcode: str, staff_id: str) -> Result[Redemption]:
        if not barcode.startswith("TOURNEY-"):
            return Err(ErrorKind.INVALID_REQUEST, "Invalid tournament barcode format")

        try:
            entry = self._find_paid(PokerEntry, barcode)
            if entry is None:
                return Err(ErrorKind.NOT_FOUND, "Invalid or already redeemed entry")

            now = self.clock()
            closed = self._window_error(now, entry.will_call_window_start, entry.will_call_window_end)
            if closed is not None:
                return closed

            return self._redeem(
                PokerEntry, entry, staff_id, now,
                audit_event="entry_redeemed",
                details={"barcode": barcode, "tourney_id": entry.tourney_id},
            )
        except SQLAlchemyError as e:
            return self._storage_error("ENTRY_REDEEM_FAILED", e)

    def redeem_voucher(self, barcode: str, staff_id: str) -> Result[Redemption]:
        if not barcode.startswith("VOUCHER-"):
            return Err(ErrorKind.INVALID_REQUEST, "Invalid voucher barcode format")

        try:
            voucher = self._find_paid(ChipVoucher, barcode)
            if voucher is None:
                return Err(ErrorKind.NOT_FOUND, "Invalid or already redeemed voucher")

            now = self.clock()
            closed = self._window_error(now, voucher.redeem_window_start, voucher.redeem_window_end)
            if closed is not None:
                return closed

            return self._redeem(
                ChipVoucher, voucher, staff_id, now,
                audit_event="voucher_redeemed",
                details={"barcode": barcode, "amount": voucher.amount},
            )
        except SQLAlchemyError as e:
            return self._storage_error("VOUCHER_REDEEM_FAILED", e)

    def pickup_order(self, pickup_code: str, staff_id: str) -> Result[Redemption]:
        code = pickup_code.strip().upper()
        if not code:
            return Err(ErrorKind.INVALID_REQUEST, "Pickup code required")

        try:
            order = self.db.execute(
                select(Order).where(Order.pickup_code == code)
            ).scalar_one_or_none()
            if order is None:
                return Err(ErrorKind.NOT_FOUND, "Order not found")
            if order.status != "ready":
                return Err(
                    ErrorKind.ORDER_NOT_READY,
                    "Order is not ready for pickup",
                    {"status": order.status},
                )

            now = self.clock()
            moved = self.db.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == "ready")
                .values(status="picked_up", picked_up_at=now, picked_up_by_staff_id=staff_id)
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if not moved:
                self.db.rollback()
                return Err(ErrorKind.ORDER_NOT_READY, "Order is not ready for pickup")

            self.db.add(AuditLog(
                event_type="order_picked_up",
                resource_type=Order.__tablename__,
                resource_id=order.id,
                actor="staff",
                staff_id=staff_id,
                details={"pickup_code": code, "total": order.total},
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            return self._storage_error("ORDER_PICKUP_FAILED", e)

        logger.info("ORDER_PICKED_UP", extra={"order_id": order.id, "staff_id": staff_id})
        notifications = (
            Notification(
                topic=kitchen_topic(order.vendor_id),
                event="order_picked_up",
                entity_id=order.id,
                type="order_picked_up",
            ),
            Notification(
                topic=wallet_topic(order.user_id),
                event="order_picked_up",
                entity_id=order.id,
                type="order_picked_up",
            ),
        )
        return Ok(Redemption(
            record_id=order.id, status="picked_up", redeemed_at=now, notifications=notifications,
        ))

    # ------------------------------------------------------------------

    def _find_paid(self, model: Any, barcode: str) -> Any:
        return self.db.execute(
            select(model).where(model.barcode == barcode, model.status == "paid")
        ).scalar_one_or_none()

    @staticmethod
    def _window_error(
        now: datetime,
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> Optional[Err]:
        start, end = _aware(start), _aware(end)
        if start is not None and now < start:
            return Err(
                ErrorKind.REDEMPTION_WINDOW_CLOSED,
                "Redemption window not yet open",
                {"window_start": start.isoformat()},
            )
        if end is not None and now > end:
            return Err(
                ErrorKind.REDEMPTION_WINDOW_CLOSED,
                "Redemption window has expired",
                {"window_end": end.isoformat()},
            )
        return None

    def _redeem(
        self,
        model: Any,
        record: Any,
        staff_id: str,
        now: datetime,
        *,
        audit_event: str,
        details: dict[str, Any],
    ) -> Result[Redemption]:
        moved = self.db.execute(
            update(model)
            .where(model.id == record.id, model.status == "paid")
            .values(status="redeemed", redeemed_at=now, redeemed_by_staff_id=staff_id)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if not moved:
            self.db.rollback()
            return Err(ErrorKind.NOT_FOUND, "Invalid or already redeemed code")

        record_id, user_id = record.id, record.user_id
        self.db.add(AuditLog(
            event_type=audit_event,
            resource_type=model.__tablename__,
            resource_id=record_id,
            actor="staff",
            staff_id=staff_id,
            details={**details, "redeemed_at": now.isoformat()},
        ))
        self.db.commit()

        logger.info(
            audit_event.upper(),
            extra={"record_id": record_id, "staff_id": staff_id},
        )
        notification = Notification(
            topic=wallet_topic(user_id),
            event="wallet_update",
            entity_id=record_id,
            type=audit_event,
        )
        return Ok(Redemption(
            record_id=record_id, status="redeemed", redeemed_at=now, notifications=(notification,),
        ))

    def _storage_error(self, code: str, exc: Exception) -> Err:
        self.db.rollback()
        logger.error(code, extra={"error_type": type(exc).__name__}, exc_info=True)
        return Err(ErrorKind.STORAGE_ERROR, "Failed to record redemption")
