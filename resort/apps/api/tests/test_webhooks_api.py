"""Stripe webhook contract: signature gate, idempotency, fulfillment, error taxonomy.

Status taxonomy:
  bad / missing / stale signature      → 400 (never 500)
  missing webhook secret               → 500 WEBHOOK_PROVIDER_MISCONFIG + Retry-After
  processing failure after admission   → 500 WEBHOOK_INTERNAL_ERROR, event reclaimable
  duplicate delivery                   → 200 already_processed, zero side effects
"""

import asyncio
import json
import logging
import threading
import time
from io import StringIO
from typing import Optional
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from resort_api.billing.result import Ok
from resort_api.billing.webhook_dedup import Admission
from resort_api.billing.webhook_verify import compute_signature
from resort_api.db.models import AuditLog, EventTicket, ProcessorEvent
from resort_api.db.session import get_db
from resort_api.main import app
from resort_api.utils.logging import JSONFormatter

WEBHOOK_SECRET = "whsec_test_secret"
USER_ID = "user-guest-1"


# ── Log capture helper ────────────────────────────────────────────────────────


class LogCapture:
    """Capture JSON-formatted root log output for a test block."""

    def __init__(self) -> None:
        self._root = logging.getLogger()
        self._saved: list[logging.Handler] = []
        self._saved_level = logging.WARNING
        self._stream: Optional[StringIO] = None
        self._handler: Optional[logging.StreamHandler] = None

    def __enter__(self) -> "LogCapture":
        self._saved = self._root.handlers[:]
        self._saved_level = self._root.level
        for h in self._saved:
            self._root.removeHandler(h)
        self._stream = StringIO()
        self._handler = logging.StreamHandler(self._stream)
        self._handler.setFormatter(JSONFormatter())
        self._root.addHandler(self._handler)
        self._root.setLevel(logging.INFO)
        return self

    def __exit__(self, *_) -> None:
        if self._handler:
            self._root.removeHandler(self._handler)
        for h in self._saved:
            self._root.addHandler(h)
        self._root.setLevel(self._saved_level)

    def raw(self) -> str:
        assert self._stream is not None
        return self._stream.getvalue()

    def messages(self) -> list[str]:
        return [json.loads(line)["message"] for line in self.raw().splitlines() if line.strip()]


# ── Helpers ───────────────────────────────────────────────────────────────────


def _event(
    event_id: str,
    event_type: str,
    obj: dict,
) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }).encode()


def _succeeded(event_id: str = "evt_success_1", amount: int = 10400) -> bytes:
    return _event(event_id, "payment_intent.succeeded", {
        "id": "pi_ticket",
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount,
        "receipt_email": "guest@example.com",
        "client_secret": "pi_ticket_secret_zzz",
        "metadata": {"user_id": USER_ID, "purpose": "event", "ref_id": "evt-gala"},
    })


def _sign(raw: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> dict:
    ts = timestamp if timestamp is not None else int(time.time())
    return {
        "Stripe-Signature": f"t={ts},v1={compute_signature(secret, ts, raw)}",
        "Content-Type": "application/json",
    }


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.delenv("STRIPE_WEBHOOK_TOLERANCE_SEC", raising=False)


@pytest.fixture
def api(db_session):
    app.dependency_overrides[get_db] = lambda: db_session
    try:
        yield AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def published():
    with patch("resort_api.routers.webhooks.broadcast", new_callable=AsyncMock) as mock:
        yield mock


@pytest.fixture
def pending_ticket(db_session, event) -> EventTicket:
    ticket = EventTicket(
        user_id=USER_ID,
        event_id=event.id,
        qty=2,
        amount=10400,
        status="pending",
        stripe_payment_intent_id="pi_ticket",
    )
    db_session.add(ticket)
    db_session.commit()
    return ticket


# ── Success path ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_signed_success_grants_ticket(api, db_session, webhook_secret, published, pending_ticket):
    raw = _succeeded()

    async with api as client:
        response = await client.post("/webhooks/stripe", content=raw, headers=_sign(raw))

    assert response.status_code == 200
    assert response.json() == {"status": "processed"}

    db_session.expire_all()
    ticket = db_session.get(EventTicket, pending_ticket.id)
    assert ticket.status == "paid"
    assert ticket.barcode.startswith("TICKET-")

    row = db_session.get(ProcessorEvent, "evt_success_1")
    assert (row.processed, row.status) == (True, "done")

    published.assert_awaited_once()
    (notifications,), _ = published.await_args
    assert [n.topic for n in notifications] == [f"wallet:{USER_ID}"]


@pytest.mark.asyncio
async def test_replayed_event_has_no_second_side_effect(api, db_session, webhook_secret, published, pending_ticket):
    raw = _succeeded()

    async with api as client:
        first = await client.post("/webhooks/stripe", content=raw, headers=_sign(raw))
        second = await client.post("/webhooks/stripe", content=raw, headers=_sign(raw))

    assert first.json() == {"status": "processed"}
    assert second.status_code == 200
    assert second.json() == {"status": "already_processed"}
    published.assert_awaited_once()
    grants = db_session.execute(
        select(AuditLog).where(AuditLog.event_type == "entitlement_granted")
    ).scalars().all()
    assert len(grants) == 1


@pytest.mark.asyncio
async def test_amount_disagreement_is_acknowledged_as_mismatch(api, db_session, webhook_secret, published, pending_ticket):
    raw = _succeeded(amount=100)

    async with api as client:
        response = await client.post("/webhooks/stripe", content=raw, headers=_sign(raw))

    assert response.status_code == 200
    db_session.expire_all()
    ticket = db_session.get(EventTicket, pending_ticket.id)
    assert ticket.status == "payment_mismatch"
    assert ticket.barcode is None
    (notifications,), _ = published.await_args
    assert tuple(notifications) == ()


@pytest.mark.asyncio
async def test_unhandled_event_type_is_acknowledged(api, db_session, webhook_secret, published):
    raw = _event("evt_other", "customer.created", {"id": "cus_1"})

    async with api as client:
        response = await client.post("/webhooks/stripe", content=raw, headers=_sign(raw))

    assert response.json() == {"status": "processed"}
    assert db_session.get(ProcessorEvent, "evt_other").processed is True
    published.assert_not_awaited()


@pytest.mark.asyncio
async def test_refund_recovers_metadata_from_intent(api, db_session, webhook_secret, published, pending_ticket):
    pending_ticket.status = "paid"
    pending_ticket.barcode = "TICKET-1-abcd"
    db_session.commit()

    stripe = MagicMock()
    stripe.retrieve_payment_intent = AsyncMock(return_value={
        "id": "pi_ticket",
        "metadata": {"user_id": USER_ID, "purpose": "event", "ref_id": "evt-gala"},
    })
    raw = _event("evt_refund_1", "charge.refunded", {"id": "ch_1", "payment_intent": "pi_ticket"})

    with patch("resort_api.routers.webhooks.get_stripe_client", return_value=stripe):
        async with api as client:
            response = await client.post("/webhooks/stripe", content=raw, headers=_sign(raw))

    assert response.json() == {"status": "processed"}
    stripe.retrieve_payment_intent.assert_awaited_once_with("pi_ticket")
    db_session.expire_all()
    ticket = db_session.get(EventTicket, pending_ticket.id)
    assert ticket.status == "refunded"
    assert ticket.barcode is None


@pytest.mark.asyncio
async def test_refund_delivered_before_success_prevents_grant(
    api, db_session, webhook_secret, published, pending_ticket
):
    stripe = MagicMock()
    stripe.retrieve_payment_intent = AsyncMock(return_value={
        "id": "pi_ticket",
        "metadata": {"user_id": USER_ID, "purpose": "event", "ref_id": "evt-gala"},
    })
    refund = _event("evt_refund_early", "charge.refunded", {"id": "ch_9", "payment_intent": "pi_ticket"})
    success = _succeeded("evt_success_late")

    with patch("resort_api.routers.webhooks.get_stripe_client", return_value=stripe):
        async with api as client:
            first = await client.post("/webhooks/stripe", content=refund, headers=_sign(refund))
            second = await client.post("/webhooks/stripe", content=success, headers=_sign(success))

    assert first.json() == {"status": "processed"}
    assert second.json() == {"status": "processed"}
    db_session.expire_all()
    ticket = db_session.get(EventTicket, pending_ticket.id)
    assert ticket.status == "refunded"
    assert ticket.barcode is None


# ── Signature gate (never 500) ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_wrong_secret_is_400_and_not_recorded(api, db_session, webhook_secret, published):
    raw = _succeeded()

    async with api as client:
        response = await client.post(
            "/webhooks/stripe", content=raw, headers=_sign(raw, secret="whsec_attacker"),
        )

    assert response.status_code == 400
    assert response.headers["content-type"].startswith("application/problem+json")
    assert "Retry-After" not in response.headers
    body = response.json()
    assert body["error_code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert body["detail"] == "Signature mismatch"
    assert db_session.get(ProcessorEvent, "evt_success_1") is None


@pytest.mark.asyncio
async def test_missing_signature_header_is_400(api, webhook_secret, published):
    async with api as client:
        response = await client.post("/webhooks/stripe", content=_succeeded())

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing Stripe-Signature header"


@pytest.mark.asyncio
async def test_stale_timestamp_is_400(api, webhook_secret, published):
    raw = _succeeded()

    async with api as client:
        response = await client.post(
            "/webhooks/stripe", content=raw, headers=_sign(raw, timestamp=int(time.time()) - 3600),
        )

    assert response.status_code == 400
    assert response.json()["detail"] == "Timestamp outside the tolerance zone"


@pytest.mark.asyncio
async def test_missing_webhook_secret_is_500_with_retry_after(api, monkeypatch, published):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    raw = _succeeded()

    async with api as client:
        response = await client.post("/webhooks/stripe", content=raw, headers=_sign(raw))

    assert response.status_code == 500
    assert response.headers["Retry-After"] == "60"
    assert response.json()["error_code"] == "WEBHOOK_PROVIDER_MISCONFIG"


# ── Failure after admission ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_processing_failure_marks_event_failed_and_redelivery_reprocesses(
    api, db_session, webhook_secret, published, pending_ticket
):
    raw = _succeeded()

    async with api as client:
        with patch(
            "resort_api.routers.webhooks._process_stripe_event",
            new=AsyncMock(side_effect=RuntimeError("db exploded")),
        ):
            failed = await client.post("/webhooks/stripe", content=raw, headers=_sign(raw))

        assert failed.status_code == 500
        assert failed.headers["Retry-After"] == "60"
        assert failed.json()["error_code"] == "WEBHOOK_INTERNAL_ERROR"
        db_session.expire_all()
        assert db_session.get(ProcessorEvent, "evt_success_1").status == "failed"

        retried = await client.post("/webhooks/stripe", content=raw, headers=_sign(raw))

    assert retried.json() == {"status": "processed"}
    db_session.expire_all()
    assert db_session.get(EventTicket, pending_ticket.id).status == "paid"


@pytest.mark.asyncio
async def test_upstream_failure_during_refund_is_500(api, db_session, webhook_secret, published):
    stripe = MagicMock()
    stripe.retrieve_payment_intent = AsyncMock(side_effect=httpx.ConnectError("stripe down"))
    raw = _event("evt_refund_2", "charge.refunded", {"id": "ch_2", "payment_intent": "pi_x"})

    with patch("resort_api.routers.webhooks.get_stripe_client", return_value=stripe):
        async with api as client:
            response = await client.post("/webhooks/stripe", content=raw, headers=_sign(raw))

    assert response.status_code == 500
    assert response.json()["error_code"] == "WEBHOOK_UPSTREAM_FAILED"
    db_session.expire_all()
    assert db_session.get(ProcessorEvent, "evt_refund_2").status == "failed"


# ── Concurrent duplicates ─────────────────────────────────────────────────────


class _LockedStore:
    """In-memory admission store with the same at-most-once contract."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seen: set[str] = set()

    def admit(self, event_id: str, event_type: str, payload_hash: Optional[str] = None):
        with self._lock:
            if event_id in self._seen:
                return Ok(Admission.ALREADY_PROCESSED)
            self._seen.add(event_id)
            return Ok(Admission.ADMITTED)

    def mark_processed(self, event_id: str):
        return Ok(None)

    def mark_failed(self, event_id: str):
        return Ok(None)


@pytest.mark.asyncio
async def test_concurrent_duplicates_apply_once(api, webhook_secret, published):
    store = _LockedStore()
    calls = 0

    async def slow_apply(db, event):
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return Ok(None)

    raw = _succeeded()
    with patch("resort_api.routers.webhooks.IdempotencyStore", return_value=store), \
         patch("resort_api.routers.webhooks._process_stripe_event", new=slow_apply):
        async with api as client:
            responses = await asyncio.gather(*[
                client.post("/webhooks/stripe", content=raw, headers=_sign(raw)) for _ in range(10)
            ])

    assert calls == 1
    statuses = sorted(r.json()["status"] for r in responses)
    assert statuses == ["already_processed"] * 9 + ["processed"]


# ── Logging hygiene ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_raw_payload_never_logged(api, webhook_secret, published, pending_ticket):
    raw = _succeeded()

    with LogCapture() as cap:
        async with api as client:
            await client.post("/webhooks/stripe", content=raw, headers=_sign(raw))
        output = cap.raw()
        messages = cap.messages()

    assert "WEBHOOK_RECEIVED" in messages
    assert "WEBHOOK_PROCESSED" in messages
    assert "guest@example.com" not in output
    assert "pi_ticket_secret_zzz" not in output
    assert WEBHOOK_SECRET not in output


def test_webhook_ack_is_the_declared_response_schema():
    schema = app.openapi()["paths"]["/webhooks/stripe"]["post"]["responses"]["200"]

    assert schema["content"]["application/json"]["schema"] == {"$ref": "#/components/schemas/WebhookAck"}
