"""M-Pesa callback receiver and payment status polling.

Daraja only cares about the acknowledgment body.  A ResultCode of 0 tells
it to stop redelivering; anything else invites a retry, which is what we
want when the envelope could not be parsed.  Unknown and duplicate
checkouts are still acknowledged with 0, since redelivering them cannot
change the outcome.
"""

from __future__ import annotations

import datetime
import logging

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.api.dependencies import ServicesDep, ledger_unavailable
from app.core.errors import CallbackParseError, LedgerError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/payments", tags=["payments"])

_ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}


class PaymentOut(BaseModel):
    id: str
    status: str
    plan: str
    amount: int
    currency: str
    checkout_request_id: str | None
    mpesa_receipt_number: str | None
    result_desc: str | None
    updated_at: datetime.datetime


@router.post("/mpesa/callback")
async def mpesa_callback(request: Request, services: ServicesDep) -> JSONResponse:
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    try:
        outcome = await services.orchestrator.handle_provider_callback(payload)
    except CallbackParseError as e:
        logger.warning("Rejected STK callback: %s", e)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ResultCode": 1, "ResultDesc": "Rejected: malformed callback"},
        )
    except LedgerError as e:
        raise ledger_unavailable(e) from None

    logger.info("STK callback handled: %s", outcome.value)
    return JSONResponse(content=_ACCEPTED)


@router.get("/{checkout_request_id}", response_model=PaymentOut)
async def get_payment(checkout_request_id: str, services: ServicesDep) -> PaymentOut:
    try:
        payment = await services.orchestrator.check_payment(checkout_request_id)
    except LedgerError as e:
        raise ledger_unavailable(e) from None

    if payment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": "Payment not found"},
        )
    return PaymentOut(
        id=str(payment.id),
        status=payment.status.value,
        plan=payment.plan.value,
        amount=payment.amount,
        currency=payment.currency,
        checkout_request_id=payment.checkout_request_id,
        mpesa_receipt_number=payment.mpesa_receipt_number,
        result_desc=payment.result_desc,
        updated_at=payment.updated_at,
    )
