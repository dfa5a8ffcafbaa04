"""Pydantic schemas for API requests/responses."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# POST /v1/payments/intents - Request/Response
# ============================================================================


class PaymentIntentCreateRequest(BaseModel):
    """Request body for POST /v1/payments/intents.

    qty and amount are hints only: qty for event tickets, amount (chip value
    in cents) for vouchers. The charge is always computed server-side.
    """

    model_config = ConfigDict(populate_by_name=True)

    purpose: Literal["event", "tourney", "voucher", "order"]
    ref_id: str = Field(..., alias="refId", min_length=1, description="Catalog or cart id")
    qty: Optional[int] = Field(None, description="Ticket quantity (event only)")
    amount: Optional[int] = Field(None, description="Chip value in cents (voucher only)")
    description: Optional[str] = Field(None, max_length=500)


class PaymentIntentCreateResponse(BaseModel):
    """Response for POST /v1/payments/intents."""

    model_config = ConfigDict(populate_by_name=True)

    client_secret: str = Field(..., alias="clientSecret")
    payment_intent_id: str = Field(..., alias="paymentIntentId")
    amount: int


# ============================================================================
# POST /v1/redemptions/* - Request/Response
# ============================================================================


class BarcodeRedeemRequest(BaseModel):
    barcode: str = Field(..., min_length=1)


class PickupRedeemRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pickup_code: str = Field(..., alias="pickupCode", min_length=1)


class RedemptionResponse(BaseModel):
    """Response for a successful redemption."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    record_id: str = Field(..., alias="recordId")
    status: str
    redeemed_at: datetime = Field(..., alias="redeemedAt")


# ============================================================================
# Webhooks
# ============================================================================


class WebhookAck(BaseModel):
    status: Literal["processed", "already_processed"]


# ============================================================================
# Errors
# ============================================================================


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    error / error_code mirror title / the ErrorKind value for clients that
    read the flat {error, error_code} shape.
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")
    error: Optional[str] = Field(None, description="Human-readable error message")
    error_code: Optional[str] = Field(None, description="Stable machine-readable error code")
    context: Optional[dict[str, Any]] = Field(None, description="Structured error context")
