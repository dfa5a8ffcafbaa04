"""Payment intent endpoint.

POST /v1/payments/intents
  - Authorization: Bearer <Supabase JWT>
  - Idempotency-Key: optional client retry key (same key, same intent)
  - Body: {purpose, refId, qty?, amount?, description?}
  - 200: {clientSecret, paymentIntentId, amount}
  - 4xx/5xx: application/problem+json with error_code
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from resort_api.auth.session_auth import CallerResolver, get_bearer_token, get_caller_resolver
from resort_api.billing.intents import PaymentIntentService
from resort_api.billing.problems import ResultProblem
from resort_api.billing.purposes import build_request
from resort_api.billing.result import Err, ErrorKind
from resort_api.billing.stripe import StripeClient, get_stripe_client
from resort_api.db.session import get_db
from resort_api.schemas import PaymentIntentCreateRequest, PaymentIntentCreateResponse

router = APIRouter(prefix="/v1/payments", tags=["payments"])
logger = logging.getLogger(__name__)


def get_stripe() -> StripeClient:
    """FastAPI dependency: Stripe client; missing key is a 500 misconfiguration."""
    try:
        return get_stripe_client()
    except ValueError:
        logger.error("STRIPE_CLIENT_MISCONFIGURED")
        raise ResultProblem(
            Err(ErrorKind.CONFIGURATION_ERROR, "Payment processor is not configured")
        ) from None


@router.post("/intents", response_model=PaymentIntentCreateResponse)
async def create_payment_intent(
    body: PaymentIntentCreateRequest,
    token: Optional[str] = Depends(get_bearer_token),
    resolver: CallerResolver = Depends(get_caller_resolver),
    stripe: StripeClient = Depends(get_stripe),
    db: Session = Depends(get_db),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=200),
) -> PaymentIntentCreateResponse:
    """Price a purchase server-side and create a Stripe payment intent."""
    built = build_request(body.purpose, body.ref_id, qty=body.qty, amount=body.amount)
    if isinstance(built, Err):
        raise ResultProblem(built)

    service = PaymentIntentService(db, stripe, resolver)
    result = await service.create_intent(
        token, built.value, description=body.description, idempotency_key=idempotency_key,
    )
    if isinstance(result, Err):
        raise ResultProblem(result)

    created = result.value
    return PaymentIntentCreateResponse(
        client_secret=created.client_secret,
        payment_intent_id=created.intent_id,
        amount=created.amount,
    )
