"""Authoritative pricing from stored catalog data.

The client only ever supplies identifiers and hints (quantity, voucher base
amount). Every charge amount is computed here from the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, assert_never

from sqlalchemy import select
from sqlalchemy.orm import Session

from resort_api.billing.purposes import (
    EntryRequest,
    OrderRequest,
    PurchaseRequest,
    TicketRequest,
    VoucherRequest,
)
from resort_api.billing.result import Err, ErrorKind, Ok, Result
from resort_api.db.models import (
    Event,
    MenuItem,
    Order,
    OrderItem,
    PokerTourney,
    VoucherPolicy,
)

logger = logging.getLogger(__name__)

DEFAULT_MIN_CHIP_VOUCHER = 2000
DEFAULT_MAX_CHIP_VOUCHER = 100000

# Stored vs recomputed amounts may differ by rounding only
AMOUNT_TOLERANCE_CENTS = 1


@dataclass(frozen=True)
class Quote:
    """amount is the full charge in cents; fee is the part of it that is fees.

    subtotal is set for orders only: the line total recomputed from menu prices.
    """

    amount: int
    fee: int
    subtotal: Optional[int] = None


def ticket_amount(event: Event, qty: int) -> int:
    return (event.price + event.fee) * qty


def entry_amount(tourney: PokerTourney) -> int:
    return tourney.buyin + tourney.fee


def voucher_fee(amount: int) -> int:
    """3% + 299 cents, rounded half up."""
    return (amount * 3 + 29900 + 50) // 100


def within_tolerance(expected: int, actual: int) -> bool:
    return abs(expected - actual) <= AMOUNT_TOLERANCE_CENTS


class PriceCalculator:
    """Compute the authoritative charge for a purchase request."""

    def __init__(self, db: Session):
        self.db = db

    def calculate(self, request: PurchaseRequest, user_id: str) -> Result[Quote]:
        if isinstance(request, TicketRequest):
            return self._ticket(request)
        if isinstance(request, EntryRequest):
            return self._entry(request)
        if isinstance(request, VoucherRequest):
            return self._voucher(request)
        if isinstance(request, OrderRequest):
            return self._order(request, user_id)
        assert_never(request)

    def voucher_bounds(self) -> tuple[int, int]:
        policy = self.db.get(VoucherPolicy, "global")
        if policy is None:
            return DEFAULT_MIN_CHIP_VOUCHER, DEFAULT_MAX_CHIP_VOUCHER
        return policy.min_chip_voucher, policy.max_chip_voucher

    def _ticket(self, request: TicketRequest) -> Result[Quote]:
        if request.qty <= 0:
            return Err(ErrorKind.INVALID_REQUEST, "qty must be a positive integer")

        event = self.db.get(Event, request.event_id)
        if event is None or not event.onsale:
            return Err(ErrorKind.NOT_FOUND, "Event not found")
        if event.inventory < request.qty:
            return Err(
                ErrorKind.SOLD_OUT,
                "Not enough tickets available",
                {"available": event.inventory, "requested": request.qty},
            )

        return Ok(Quote(amount=ticket_amount(event, request.qty), fee=event.fee * request.qty))

    def _entry(self, request: EntryRequest) -> Result[Quote]:
        tourney = self.db.get(PokerTourney, request.tourney_id)
        if tourney is None or not tourney.active:
            return Err(ErrorKind.NOT_FOUND, "Tournament not found")
        if tourney.seats_left <= 0:
            return Err(ErrorKind.SOLD_OUT, "Tournament is full")

        return Ok(Quote(amount=entry_amount(tourney), fee=tourney.fee))

    def _voucher(self, request: VoucherRequest) -> Result[Quote]:
        if request.amount <= 0:
            return Err(ErrorKind.INVALID_REQUEST, "amount must be a positive integer")

        minimum, maximum = self.voucher_bounds()
        if request.amount < minimum:
            return Err(
                ErrorKind.BELOW_MINIMUM,
                f"Minimum chip voucher is {minimum} cents",
                {"minimum": minimum},
            )
        if request.amount > maximum:
            return Err(
                ErrorKind.ABOVE_MAXIMUM,
                f"Maximum chip voucher is {maximum} cents",
                {"maximum": maximum},
            )

        fee = voucher_fee(request.amount)
        return Ok(Quote(amount=request.amount + fee, fee=fee))

    def _order(self, request: OrderRequest, user_id: str) -> Result[Quote]:
        order = self.db.execute(
            select(Order).where(
                Order.id == request.order_id,
                Order.user_id == user_id,
                Order.status == "cart",
            )
        ).scalar_one_or_none()
        if order is None:
            return Err(ErrorKind.NOT_FOUND, "Cart not found")

        rows = self.db.execute(
            select(OrderItem, MenuItem)
            .outerjoin(MenuItem, MenuItem.id == OrderItem.menu_item_id)
            .where(OrderItem.order_id == order.id)
        ).all()
        if not rows:
            return Err(ErrorKind.INVALID_REQUEST, "Cart has no items")

        subtotal = 0
        for item, menu_item in rows:
            if menu_item is None or not menu_item.is_active:
                return Err(
                    ErrorKind.NOT_FOUND,
                    f"Menu item unavailable: {item.name_cache or item.menu_item_id}",
                    {"menu_item_id": item.menu_item_id},
                )
            subtotal += item.qty * menu_item.price

        if not within_tolerance(subtotal, order.subtotal):
            logger.warning(
                "ORDER_SUBTOTAL_MISMATCH",
                extra={
                    "order_id": order.id,
                    "stored_subtotal": order.subtotal,
                    "computed_subtotal": subtotal,
                },
            )
            return Err(
                ErrorKind.SUBTOTAL_MISMATCH,
                "Cart prices changed, please review your order",
                {"stored": order.subtotal, "computed": subtotal},
            )

        return Ok(Quote(
            amount=subtotal + order.tax + order.tip + order.fee,
            fee=order.fee,
            subtotal=subtotal,
        ))
