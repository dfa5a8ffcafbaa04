"""SQLAlchemy ORM Models for the resort payments subsystem.

Money columns are integer cents (BIGINT). Identifiers are text UUIDs.
Purchase rows are keyed by stripe_payment_intent_id once the intent exists.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BIGINT, BOOLEAN, JSON, TEXT, TIMESTAMP, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Catalog (read-only for this subsystem)
# ---------------------------------------------------------------------------


class Event(Base):
    """Ticketed resort event."""

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(TEXT, nullable=False)
    price: Mapped[int] = mapped_column(BIGINT, nullable=False)
    fee: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    inventory: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    onsale: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    starts_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )


class PokerTourney(Base):
    """Poker tournament with a fixed buy-in."""

    __tablename__ = "poker_tourneys"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(TEXT, nullable=False)
    buyin: Mapped[int] = mapped_column(BIGINT, nullable=False)
    fee: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    seats_total: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    seats_left: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    starts_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )


class VoucherPolicy(Base):
    """Global settings row (id='global') holding chip voucher bounds."""

    __tablename__ = "settings"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default="global")
    min_chip_voucher: Mapped[int] = mapped_column(BIGINT, nullable=False, default=2000)
    max_chip_voucher: Mapped[int] = mapped_column(BIGINT, nullable=False, default=100000)


class DiningVendor(Base):
    __tablename__ = "dining_vendors"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(TEXT, nullable=False)


class MenuItem(Base):
    __tablename__ = "menu_items"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    vendor_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to dining_vendors
    name: Mapped[str] = mapped_column(TEXT, nullable=False)
    price: Mapped[int] = mapped_column(BIGINT, nullable=False)
    is_active: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)

    __table_args__ = (Index("idx_menu_items_vendor", "vendor_id"),)


# ---------------------------------------------------------------------------
# Purchase records
# ---------------------------------------------------------------------------


class Order(Base):
    """Food order. Created in 'cart' by the booking flow, promoted on payment.

    Lifecycle: cart → placed → prepping → ready → picked_up
               cart → canceled; placed|prepping|ready|picked_up → refunded
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    vendor_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to dining_vendors

    subtotal: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    tax: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    tip: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    fee: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    total: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)

    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="cart")
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(
        TEXT, nullable=True, unique=True
    )

    pickup_code: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True, unique=True)
    pickup_eta: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    picked_up_by_staff_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (
        Index("idx_orders_user_status", "user_id", "status"),
        Index("idx_orders_vendor_status", "vendor_id", "status"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to orders
    menu_item_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to menu_items
    qty: Mapped[int] = mapped_column(BIGINT, nullable=False, default=1)
    name_cache: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (Index("idx_order_items_order", "order_id"),)


class EventTicket(Base):
    """Event ticket purchase.

    Lifecycle: pending → paid → redeemed; pending → canceled | payment_mismatch;
    paid → refunded
    """

    __tablename__ = "event_tickets"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    event_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to events
    qty: Mapped[int] = mapped_column(BIGINT, nullable=False, default=1)
    amount: Mapped[int] = mapped_column(BIGINT, nullable=False)
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(
        TEXT, nullable=True, unique=True
    )
    barcode: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True, unique=True)
    issued_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    redeemed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    redeemed_by_staff_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (Index("idx_event_tickets_user", "user_id"),)


class PokerEntry(Base):
    """Tournament entry. Will-call window is stamped at fulfillment."""

    __tablename__ = "poker_entries"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    tourney_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to poker_tourneys
    amount: Mapped[int] = mapped_column(BIGINT, nullable=False)
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(
        TEXT, nullable=True, unique=True
    )
    barcode: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True, unique=True)
    issued_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    will_call_window_start: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    will_call_window_end: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    redeemed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    redeemed_by_staff_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (Index("idx_poker_entries_user", "user_id"),)


class ChipVoucher(Base):
    """Chip voucher. amount is the chip value; fee is charged on top."""

    __tablename__ = "chip_vouchers"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    amount: Mapped[int] = mapped_column(BIGINT, nullable=False)
    fee: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(
        TEXT, nullable=True, unique=True
    )
    barcode: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True, unique=True)
    issued_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    redeem_window_start: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    redeem_window_end: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    redeemed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    redeemed_by_staff_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (Index("idx_chip_vouchers_user", "user_id"),)


# ---------------------------------------------------------------------------
# Webhook bookkeeping / audit
# ---------------------------------------------------------------------------


class ProcessorEvent(Base):
    """Handled processor (Stripe) webhook events.

    Atomic gate: INSERT ON CONFLICT (id) DO NOTHING RETURNING id
      → row returned  : first handler → continue
      → no row        : duplicate/concurrent → 200 immediately (zero side effects)

    processed flips to true only after every side effect has committed.
    """

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True)  # evt_...
    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    processed: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="processing"
    )  # processing | done | failed
    received_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    # SHA-256 hex of request body (never raw payload)
    payload_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (
        Index("idx_webhook_events_status", "status"),
        Index("idx_webhook_events_received", "received_at"),
    )


class AuditLog(Base):
    """Append-only trail for fulfillment, refund and redemption actions."""

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    resource_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    resource_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    actor: Mapped[str] = mapped_column(TEXT, nullable=False)  # stripe_webhook | staff
    staff_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (
        Index("idx_audit_logs_resource", "resource_type", "resource_id"),
        Index("idx_audit_logs_created", "created_at"),
    )
