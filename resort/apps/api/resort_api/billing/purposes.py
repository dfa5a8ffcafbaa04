"""Purchase purposes as a tagged union of request dataclasses.

Each purpose carries exactly the hints it needs; dispatch sites match on the
concrete type and end in assert_never so adding a purpose is a type error
until every site handles it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from resort_api.billing.result import Err, ErrorKind, Ok, Result


class Purpose(str, Enum):
    EVENT = "event"
    TOURNEY = "tourney"
    VOUCHER = "voucher"
    ORDER = "order"


@dataclass(frozen=True)
class TicketRequest:
    event_id: str
    qty: int = 1

    purpose = Purpose.EVENT

    @property
    def reference_id(self) -> str:
        return self.event_id


@dataclass(frozen=True)
class EntryRequest:
    tourney_id: str

    purpose = Purpose.TOURNEY

    @property
    def reference_id(self) -> str:
        return self.tourney_id


@dataclass(frozen=True)
class VoucherRequest:
    """amount is the chip value in cents; reference_id is client-chosen."""

    amount: int
    reference_id: str = ""

    purpose = Purpose.VOUCHER


@dataclass(frozen=True)
class OrderRequest:
    order_id: str

    purpose = Purpose.ORDER

    @property
    def reference_id(self) -> str:
        return self.order_id


PurchaseRequest = Union[TicketRequest, EntryRequest, VoucherRequest, OrderRequest]


def build_request(
    purpose: str,
    ref_id: str,
    *,
    qty: Optional[int] = None,
    amount: Optional[int] = None,
) -> Result[PurchaseRequest]:
    """Build a typed purchase request from wire fields.

    Returns Err(INVALID_REQUEST) for an unknown purpose or a missing/malformed
    hint (voucher without amount, non-positive quantity).
    """
    try:
        kind = Purpose(purpose)
    except ValueError:
        return Err(ErrorKind.INVALID_REQUEST, f"Unknown purpose: {purpose!r}")

    if kind is Purpose.EVENT:
        quantity = 1 if qty is None else qty
        if quantity <= 0:
            return Err(ErrorKind.INVALID_REQUEST, "qty must be a positive integer")
        return Ok(TicketRequest(event_id=ref_id, qty=quantity))
    if kind is Purpose.TOURNEY:
        return Ok(EntryRequest(tourney_id=ref_id))
    if kind is Purpose.VOUCHER:
        if amount is None or amount <= 0:
            return Err(ErrorKind.INVALID_REQUEST, "amount is required for chip vouchers")
        return Ok(VoucherRequest(amount=amount, reference_id=ref_id))
    return Ok(OrderRequest(order_id=ref_id))
