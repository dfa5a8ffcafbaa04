"""Payment intent issuance.

Steps:
  1. Resolve the caller from the bearer token (Supabase Auth)
  2. Price the request from stored catalog data (PriceCalculator)
  3. Look up or create the Stripe customer by email
  4. Create the payment intent with routing metadata {user_id, purpose, ref_id}
  5. Insert the pending purchase record (orders: attach the intent, stay 'cart')
  6. Return the client secret

No money moves here. There is no transaction spanning steps 4 and 5; if the
insert fails the intent is orphaned and the webhook later logs a missing record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union, assert_never

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from resort_api.auth.session_auth import CallerResolver
from resort_api.billing.pricing import PriceCalculator, Quote
from resort_api.billing.purposes import (
    EntryRequest,
    OrderRequest,
    PurchaseRequest,
    TicketRequest,
    VoucherRequest,
)
from resort_api.billing.result import Err, ErrorKind, Ok, Result
from resort_api.billing.stripe import StripeClient
from resort_api.context import payment_intent_id_var
from resort_api.db.models import ChipVoucher, EventTicket, Order, PokerEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntentCreated:
    client_secret: str
    intent_id: str
    amount: int


class PaymentIntentService:
    """Create processor charge intents for priced purchase requests."""

    def __init__(self, db: Session, stripe: StripeClient, resolve_caller: CallerResolver):
        self.db = db
        self.stripe = stripe
        self.resolve_caller = resolve_caller
        self.calculator = PriceCalculator(db)

    async def create_intent(
        self,
        auth_token: Optional[str],
        request: PurchaseRequest,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Result[IntentCreated]:
        """Create the processor intent and record the pending purchase.

        idempotency_key is the client's retry key; it is scoped to the caller
        and forwarded to Stripe, which returns the original intent on a retry.
        """
        resolved = self.resolve_caller(auth_token)
        if isinstance(resolved, Err):
            return resolved
        caller = resolved.value
        if not caller.email:
            return Err(ErrorKind.UNAUTHENTICATED, "User email not available")

        priced = self.calculator.calculate(request, caller.user_id)
        if isinstance(priced, Err):
            logger.info(
                "PAYMENT_INTENT_REJECTED",
                extra={"purpose": request.purpose.value, "error_code": priced.kind.value},
            )
            return priced
        quote = priced.value

        metadata = {
            "user_id": caller.user_id,
            "purpose": request.purpose.value,
            "ref_id": request.reference_id,
        }

        try:
            customer_id = await self.stripe.get_or_create_customer(
                email=caller.email, user_id=caller.user_id
            )
            intent = await self.stripe.create_payment_intent(
                amount=quote.amount,
                customer_id=customer_id,
                metadata=metadata,
                description=description,
                idempotency_key=f"{caller.user_id}:{idempotency_key}" if idempotency_key else None,
            )
        except httpx.HTTPError as e:
            status_code = e.response.status_code if isinstance(e, httpx.HTTPStatusError) else None
            logger.error(
                "STRIPE_REQUEST_FAILED",
                extra={
                    "purpose": request.purpose.value,
                    "error_type": type(e).__name__,
                    "upstream_status": status_code,
                },
            )
            return Err(ErrorKind.PROCESSOR_ERROR, "Payment processor request failed")

        intent_id = intent["id"]
        payment_intent_id_var.set(intent_id)

        try:
            recorded = self._record_pending(request, caller.user_id, quote, intent_id)
            if not recorded:
                self.db.rollback()
                logger.warning(
                    "ORDER_CART_CLOSED_BEFORE_INTENT",
                    extra={"ref_id": request.reference_id, "stripe_payment_intent_id": intent_id},
                )
                return Err(ErrorKind.NOT_FOUND, "Cart not found")
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            # Orphaned intent: the webhook will find no record and log it
            logger.error(
                "PURCHASE_RECORD_INSERT_FAILED",
                extra={
                    "purpose": request.purpose.value,
                    "stripe_payment_intent_id": intent_id,
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )
            return Err(ErrorKind.STORAGE_ERROR, "Failed to record purchase")

        logger.info(
            "PAYMENT_INTENT_CREATED",
            extra={
                "purpose": request.purpose.value,
                "ref_id": request.reference_id,
                "amount": quote.amount,
                "fee": quote.fee,
            },
        )
        return Ok(IntentCreated(
            client_secret=intent["client_secret"],
            intent_id=intent_id,
            amount=quote.amount,
        ))

    def _record_pending(
        self,
        request: PurchaseRequest,
        user_id: str,
        quote: Quote,
        intent_id: str,
    ) -> bool:
        """Write the pending purchase for intent_id.

        Returns False when an order cart stopped being an open cart while the
        intent was being created.
        """
        if isinstance(request, OrderRequest):
            # Status stays 'cart'; only the webhook promotes the order
            moved = self.db.execute(
                update(Order)
                .where(
                    Order.id == request.order_id,
                    Order.user_id == user_id,
                    Order.status == "cart",
                )
                .values(
                    stripe_payment_intent_id=intent_id,
                    subtotal=quote.subtotal,
                    total=quote.amount,
                )
                .execution_options(synchronize_session=False)
            )
            return moved.rowcount == 1

        if self._already_recorded(request, intent_id):
            # Retried request: Stripe replayed the original intent
            logger.info(
                "PAYMENT_INTENT_REPLAYED",
                extra={"purpose": request.purpose.value, "stripe_payment_intent_id": intent_id},
            )
            return True

        if isinstance(request, TicketRequest):
            self.db.add(EventTicket(
                user_id=user_id,
                event_id=request.event_id,
                qty=request.qty,
                amount=quote.amount,
                status="pending",
                stripe_payment_intent_id=intent_id,
            ))
        elif isinstance(request, EntryRequest):
            self.db.add(PokerEntry(
                user_id=user_id,
                tourney_id=request.tourney_id,
                amount=quote.amount,
                status="pending",
                stripe_payment_intent_id=intent_id,
            ))
        elif isinstance(request, VoucherRequest):
            self.db.add(ChipVoucher(
                user_id=user_id,
                amount=request.amount,
                fee=quote.fee,
                status="pending",
                stripe_payment_intent_id=intent_id,
            ))
        else:
            assert_never(request)
        return True

    def _already_recorded(
        self,
        request: Union[TicketRequest, EntryRequest, VoucherRequest],
        intent_id: str,
    ) -> bool:
        model = {
            TicketRequest: EventTicket,
            EntryRequest: PokerEntry,
            VoucherRequest: ChipVoucher,
        }[type(request)]
        return self.db.execute(
            select(model.id).where(model.stripe_payment_intent_id == intent_id)
        ).first() is not None
