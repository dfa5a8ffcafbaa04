"""PriceCalculator: authoritative amounts from stored catalog data."""

import pytest

from resort_api.billing.pricing import PriceCalculator, Quote, voucher_fee
from resort_api.billing.purposes import (
    EntryRequest,
    OrderRequest,
    TicketRequest,
    VoucherRequest,
    build_request,
)
from resort_api.billing.result import Err, ErrorKind, Ok
from resort_api.db.models import MenuItem, VoucherPolicy

USER_ID = "user-guest-1"


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


def test_ticket_two_at_fifty_plus_two_fee_is_10400(db_session, event):
    result = PriceCalculator(db_session).calculate(TicketRequest(event_id=event.id, qty=2), USER_ID)

    assert result == Ok(Quote(amount=10400, fee=400))


def test_ticket_unknown_event_is_not_found(db_session):
    result = PriceCalculator(db_session).calculate(TicketRequest(event_id="nope", qty=1), USER_ID)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.NOT_FOUND


def test_ticket_event_off_sale_is_not_found(db_session, event):
    event.onsale = False
    db_session.commit()

    result = PriceCalculator(db_session).calculate(TicketRequest(event_id=event.id, qty=1), USER_ID)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.NOT_FOUND


def test_ticket_inventory_below_quantity_is_sold_out(db_session, event):
    event.inventory = 1
    db_session.commit()

    result = PriceCalculator(db_session).calculate(TicketRequest(event_id=event.id, qty=2), USER_ID)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.SOLD_OUT
    assert result.details == {"available": 1, "requested": 2}


def test_ticket_non_positive_quantity_is_invalid(db_session, event):
    result = PriceCalculator(db_session).calculate(TicketRequest(event_id=event.id, qty=0), USER_ID)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.INVALID_REQUEST


# ---------------------------------------------------------------------------
# Tournament entries
# ---------------------------------------------------------------------------


def test_entry_is_buyin_plus_fee(db_session, tourney):
    result = PriceCalculator(db_session).calculate(EntryRequest(tourney_id=tourney.id), USER_ID)

    assert result == Ok(Quote(amount=11000, fee=1000))


def test_entry_full_tournament_is_sold_out(db_session, tourney):
    tourney.seats_left = 0
    db_session.commit()

    result = PriceCalculator(db_session).calculate(EntryRequest(tourney_id=tourney.id), USER_ID)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.SOLD_OUT


def test_entry_inactive_tournament_is_not_found(db_session, tourney):
    tourney.active = False
    db_session.commit()

    result = PriceCalculator(db_session).calculate(EntryRequest(tourney_id=tourney.id), USER_ID)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.NOT_FOUND


# ---------------------------------------------------------------------------
# Chip vouchers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "amount, fee",
    [
        (2000, 359),     # 60 + 299
        (10000, 599),    # 300 + 299
        (50, 301),       # 1.5 + 299 rounds half up
        (100000, 3299),
    ],
)
def test_voucher_fee_is_three_percent_plus_299(amount, fee):
    assert voucher_fee(amount) == fee


def test_voucher_below_default_minimum_is_rejected(db_session):
    result = PriceCalculator(db_session).calculate(VoucherRequest(amount=1500), USER_ID)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.BELOW_MINIMUM
    assert result.details == {"minimum": 2000}


def test_voucher_above_default_maximum_is_rejected(db_session):
    result = PriceCalculator(db_session).calculate(VoucherRequest(amount=100001), USER_ID)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.ABOVE_MAXIMUM


def test_voucher_charge_is_base_plus_fee(db_session):
    result = PriceCalculator(db_session).calculate(VoucherRequest(amount=2000), USER_ID)

    assert result == Ok(Quote(amount=2359, fee=359))


def test_voucher_bounds_come_from_global_policy(db_session):
    db_session.add(VoucherPolicy(id="global", min_chip_voucher=500, max_chip_voucher=1000))
    db_session.commit()
    calculator = PriceCalculator(db_session)

    assert isinstance(calculator.calculate(VoucherRequest(amount=600), USER_ID), Ok)
    assert calculator.calculate(VoucherRequest(amount=1500), USER_ID).kind is ErrorKind.ABOVE_MAXIMUM


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def test_order_sums_current_menu_prices_plus_stored_extras(db_session, cart):
    result = PriceCalculator(db_session).calculate(OrderRequest(order_id=cart.id), USER_ID)

    # 2 x 1000 + 1 x 500 + tax 200 + tip 300 + fee 100
    assert result == Ok(Quote(amount=3100, fee=100, subtotal=2500))


def test_order_stored_subtotal_drift_is_subtotal_mismatch(db_session, cart):
    cart.subtotal = 2000
    db_session.commit()

    result = PriceCalculator(db_session).calculate(OrderRequest(order_id=cart.id), USER_ID)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.SUBTOTAL_MISMATCH
    assert result.details == {"stored": 2000, "computed": 2500}


def test_order_one_cent_rounding_is_tolerated(db_session, cart):
    cart.subtotal = 2501
    db_session.commit()

    result = PriceCalculator(db_session).calculate(OrderRequest(order_id=cart.id), USER_ID)

    assert isinstance(result, Ok)


def test_order_menu_price_change_is_detected(db_session, cart):
    db_session.get(MenuItem, "menu-burger").price = 1250
    db_session.commit()

    result = PriceCalculator(db_session).calculate(OrderRequest(order_id=cart.id), USER_ID)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.SUBTOTAL_MISMATCH


def test_order_with_inactive_menu_item_is_not_found(db_session, cart):
    db_session.get(MenuItem, "menu-fries").is_active = False
    db_session.commit()

    result = PriceCalculator(db_session).calculate(OrderRequest(order_id=cart.id), USER_ID)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.NOT_FOUND
    assert result.details == {"menu_item_id": "menu-fries"}


def test_order_owned_by_someone_else_is_not_found(db_session, cart):
    result = PriceCalculator(db_session).calculate(OrderRequest(order_id=cart.id), "user-other")

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.NOT_FOUND


def test_order_no_longer_in_cart_is_not_found(db_session, cart):
    cart.status = "placed"
    db_session.commit()

    result = PriceCalculator(db_session).calculate(OrderRequest(order_id=cart.id), USER_ID)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.NOT_FOUND


# ---------------------------------------------------------------------------
# Wire → typed request
# ---------------------------------------------------------------------------


def test_build_request_maps_each_purpose():
    assert build_request("event", "evt-1", qty=3) == Ok(TicketRequest(event_id="evt-1", qty=3))
    assert build_request("event", "evt-1") == Ok(TicketRequest(event_id="evt-1", qty=1))
    assert build_request("tourney", "trn-1") == Ok(EntryRequest(tourney_id="trn-1"))
    assert build_request("voucher", "ref-1", amount=2500) == Ok(VoucherRequest(amount=2500, reference_id="ref-1"))
    assert build_request("order", "order-1") == Ok(OrderRequest(order_id="order-1"))


@pytest.mark.parametrize(
    "purpose, kwargs",
    [
        ("event", {"qty": 0}),
        ("event", {"qty": -2}),
        ("voucher", {}),
        ("voucher", {"amount": 0}),
        ("raffle", {}),
    ],
)
def test_build_request_rejects_missing_or_malformed_hints(purpose, kwargs):
    result = build_request(purpose, "ref-1", **kwargs)

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.INVALID_REQUEST
