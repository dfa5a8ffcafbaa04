"""Stripe webhook handler.

Error taxonomy (retry storm prevention):
  (A) Missing/invalid Stripe-Signature, stale timestamp, unsigned JSON → 400
  (B) Our misconfig (missing webhook secret) → 500 WEBHOOK_PROVIDER_MISCONFIG
  (C) Idempotency store unavailable → 500 WEBHOOK_STORAGE_ERROR
  (D) Upstream Stripe error while recovering refund metadata → 500 WEBHOOK_UPSTREAM_FAILED
  (E) Internal DB/processing error after admission → 500 WEBHOOK_INTERNAL_ERROR
  500 is ONLY for (B)-(E). Signature mismatch is NEVER 500.

Events:
  payment_intent.succeeded → EntitlementIssuer.fulfill
  payment_intent.canceled  → EntitlementIssuer.cancel
  charge.refunded          → EntitlementIssuer.refund (metadata from the retrieved intent)
  anything else            → acknowledged, no side effects
"""

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from resort_api.billing.entitlements import EntitlementIssuer, FulfillmentOutcome, RoutingMetadata
from resort_api.billing.notifications import broadcast
from resort_api.billing.result import Err, Ok, Result
from resort_api.billing.stripe import get_stripe_client
from resort_api.billing.webhook_dedup import Admission, IdempotencyStore
from resort_api.billing.webhook_verify import ProcessorEventEnvelope, WebhookVerifier
from resort_api.config.env import get_stripe_webhook_secret, get_webhook_tolerance_seconds
from resort_api.context import payment_intent_id_var, request_id_var
from resort_api.db.session import get_db
from resort_api.schemas import WebhookAck
from resort_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

PROVIDER = "stripe"


# ============================================================================
# Webhook Problem Details helper
# ============================================================================


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    payload_hash: str | None,
    extra: dict | None = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    4xx failures → warning log.
    5xx failures → error log + Retry-After: 60 response header.

    Response extensions (beyond RFC 9457 base):
      provider, payload_hash, error_code  (safe; never contain raw payload/secrets)
    """
    request_id = request_id_var.get()
    instance = request_id or str(request.url.path)

    log_extra: dict = {
        "provider": PROVIDER,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:resort:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": PROVIDER,
        "error_code": code,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash
    if instance:
        content["instance"] = instance

    response_headers = {"Content-Type": "application/problem+json"}
    if status >= 500:
        response_headers["Retry-After"] = "60"

    return JSONResponse(
        status_code=status,
        content=content,
        headers=response_headers,
    )


# ============================================================================
# Stripe Webhook Handler
# ============================================================================


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    """Stripe webhook handler.

    Verify → admit (at most once per event id) → apply → mark processed → notify.
    """
    # ── Step 0: Raw body ingestion ───────────────────────────────────────────
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)
    payload_size = len(raw_body)

    logger.info(
        "WEBHOOK_RECEIVED",
        extra={"provider": PROVIDER, "payload_hash": payload_hash, "payload_size": payload_size},
    )

    # ── Step 1: Verifier configuration (B → 500 on misconfig) ───────────────
    try:
        verifier = WebhookVerifier(
            secret=get_stripe_webhook_secret(),
            tolerance_seconds=get_webhook_tolerance_seconds(),
        )
    except ValueError:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Webhook signature verification is not properly configured",
            payload_hash=payload_hash,
        )

    # ── Step 2: Signature verification (A → 400) ────────────────────────────
    verified = verifier.verify(raw_body, stripe_signature)
    if isinstance(verified, Err):
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_SIGNATURE_INVALID",
            title="Webhook signature verification failed",
            detail=verified.message,
            payload_hash=payload_hash,
        )
    event = verified.value

    # ── Step 3: Idempotency gate (C → 500) ──────────────────────────────────
    store = IdempotencyStore(db)
    admitted = store.admit(event.id, event.type, payload_hash)
    if isinstance(admitted, Err):
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_STORAGE_ERROR",
            title="Webhook storage unavailable",
            detail="Unable to record webhook event",
            payload_hash=payload_hash,
            extra={"event_id": event.id},
        )
    if admitted.value is Admission.ALREADY_PROCESSED:
        # Duplicate or concurrent duplicate: ACK immediately, no side effects
        logger.info(
            "WEBHOOK_ALREADY_PROCESSED",
            extra={"provider": PROVIDER, "event_id": event.id, "payload_hash": payload_hash},
        )
        return WebhookAck(status="already_processed")

    # ── Step 4: Business processing (D/E → 500) ─────────────────────────────
    try:
        applied = await _process_stripe_event(db, event)
    except httpx.HTTPError as exc:
        db.rollback()
        store.mark_failed(event.id)
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_UPSTREAM_FAILED",
            title="Webhook upstream failure",
            detail="Unable to retrieve payment intent from Stripe",
            payload_hash=payload_hash,
            extra={"event_id": event.id, "error_type": type(exc).__name__},
        )
    except Exception as exc:
        db.rollback()
        store.mark_failed(event.id)
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Internal processing error",
            detail="An internal error occurred while processing the webhook",
            payload_hash=payload_hash,
            extra={
                "event_id": event.id,
                "error_type": type(exc).__name__,
                "error_msg": sanitize_str(str(exc)),
            },
        )

    if isinstance(applied, Err):
        store.mark_failed(event.id)
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Internal processing error",
            detail="An internal error occurred while processing the webhook",
            payload_hash=payload_hash,
            extra={"event_id": event.id, "error_code_inner": applied.kind.value},
        )

    # ── Step 5: Mark processed, then notify ─────────────────────────────────
    marked = store.mark_processed(event.id)
    if isinstance(marked, Err):
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_STORAGE_ERROR",
            title="Webhook storage unavailable",
            detail="Unable to record webhook completion",
            payload_hash=payload_hash,
            extra={"event_id": event.id},
        )

    outcome = applied.value
    if outcome is not None:
        await broadcast(outcome.notifications)

    logger.info(
        "WEBHOOK_PROCESSED",
        extra={
            "provider": PROVIDER,
            "event_id": event.id,
            "event_type": event.type,
            "outcome": outcome.status if outcome is not None else "ignored",
        },
    )
    return WebhookAck(status="processed")


async def _process_stripe_event(
    db: Session,
    event: ProcessorEventEnvelope,
) -> Result[Optional[FulfillmentOutcome]]:
    """Apply a verified, admitted Stripe event.

    Returns Ok(None) for events that carry nothing to apply (unhandled type,
    unusable routing metadata); retrying those would never succeed.
    """
    obj = event.data_object
    issuer = EntitlementIssuer(db)

    if event.type in ("payment_intent.succeeded", "payment_intent.canceled"):
        intent_id = obj.get("id")
        metadata = obj.get("metadata")
    elif event.type == "charge.refunded":
        intent_id = obj.get("payment_intent")
        metadata = None
        if intent_id:
            # Charges do not carry the intent's metadata; read it from Stripe
            intent = await get_stripe_client().retrieve_payment_intent(intent_id)
            metadata = intent.get("metadata")
    else:
        logger.info("WEBHOOK_EVENT_UNHANDLED", extra={"event_id": event.id, "event_type": event.type})
        return Ok(None)

    if not intent_id:
        logger.warning("WEBHOOK_INTENT_ID_MISSING", extra={"event_id": event.id, "event_type": event.type})
        return Ok(None)
    payment_intent_id_var.set(intent_id)

    routing = RoutingMetadata.parse(metadata)
    if isinstance(routing, Err):
        logger.warning(
            "WEBHOOK_METADATA_INVALID",
            extra={"event_id": event.id, "event_type": event.type, "reason": routing.message},
        )
        return Ok(None)

    if event.type == "payment_intent.succeeded":
        processor_amount = obj.get("amount_received") or obj.get("amount")
        return issuer.fulfill(routing.value, intent_id, processor_amount)
    if event.type == "payment_intent.canceled":
        return issuer.cancel(routing.value, intent_id)
    return issuer.refund(routing.value, intent_id)
