"""Staff redemption endpoints.

POST /v1/redemptions/tickets   {barcode}     TICKET-*
POST /v1/redemptions/entries   {barcode}     TOURNEY-*
POST /v1/redemptions/vouchers  {barcode}     VOUCHER-*
POST /v1/redemptions/orders    {pickupCode}

All require a staff (Staff/Admin) session.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from resort_api.auth.session_auth import (
    Caller,
    CallerResolver,
    RoleChecker,
    get_bearer_token,
    get_caller_resolver,
    get_role_checker,
    require_staff,
)
from resort_api.billing.notifications import broadcast
from resort_api.billing.problems import ResultProblem
from resort_api.billing.redemption import Redemption, RedemptionService
from resort_api.billing.result import Err, Result
from resort_api.db.session import get_db
from resort_api.schemas import BarcodeRedeemRequest, PickupRedeemRequest, RedemptionResponse

router = APIRouter(prefix="/v1/redemptions", tags=["redemptions"])
logger = logging.getLogger(__name__)


def get_staff_caller(
    token: Optional[str] = Depends(get_bearer_token),
    resolver: CallerResolver = Depends(get_caller_resolver),
    role_checker: RoleChecker = Depends(get_role_checker),
) -> Caller:
    """FastAPI dependency: authenticated staff caller (401/403 otherwise)."""
    result = require_staff(token, resolver, role_checker)
    if isinstance(result, Err):
        raise ResultProblem(result)
    return result.value


async def _complete(result: Result[Redemption]) -> RedemptionResponse:
    if isinstance(result, Err):
        raise ResultProblem(result)
    redemption = result.value
    await broadcast(redemption.notifications)
    return RedemptionResponse(
        record_id=redemption.record_id,
        status=redemption.status,
        redeemed_at=redemption.redeemed_at,
    )


@router.post("/tickets", response_model=RedemptionResponse, summary="Check in an event ticket")
async def redeem_ticket(
    body: BarcodeRedeemRequest,
    staff: Caller = Depends(get_staff_caller),
    db: Session = Depends(get_db),
) -> RedemptionResponse:
    service = RedemptionService(db)
    return await _complete(service.redeem_ticket(body.barcode.strip(), staff.user_id))


@router.post("/entries", response_model=RedemptionResponse, summary="Will-call a tournament entry")
async def redeem_entry(
    body: BarcodeRedeemRequest,
    staff: Caller = Depends(get_staff_caller),
    db: Session = Depends(get_db),
) -> RedemptionResponse:
    service = RedemptionService(db)
    return await _complete(service.redeem_entry(body.barcode.strip(), staff.user_id))


@router.post("/vouchers", response_model=RedemptionResponse, summary="Cash out a chip voucher")
async def redeem_voucher(
    body: BarcodeRedeemRequest,
    staff: Caller = Depends(get_staff_caller),
    db: Session = Depends(get_db),
) -> RedemptionResponse:
    service = RedemptionService(db)
    return await _complete(service.redeem_voucher(body.barcode.strip(), staff.user_id))


@router.post("/orders", response_model=RedemptionResponse, summary="Hand over a ready order")
async def pickup_order(
    body: PickupRedeemRequest,
    staff: Caller = Depends(get_staff_caller),
    db: Session = Depends(get_db),
) -> RedemptionResponse:
    service = RedemptionService(db)
    return await _complete(service.pickup_order(body.pickup_code, staff.user_id))
