"""POST /v1/enrollments: the onboarding wizard's submit call.

Free plans come back ``active`` immediately.  Paid plans come back
``pending_payment`` with the checkout id the client polls on
GET /v1/payments/{checkout_request_id} while the payer enters their PIN.
"""

from __future__ import annotations

import datetime
import logging

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from app.api.dependencies import ServicesDep, ledger_unavailable
from app.core.errors import GatewayError, LedgerError, ValidationError
from app.models.user import DEFAULT_PREFERRED_TIME
from app.services import phone
from app.services.payment_orchestrator import EnrollmentRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/enrollments", tags=["enrollments"])


class EnrollmentIn(BaseModel):
    name: str
    whatsapp_number: str
    plan: str
    preferred_time: str = DEFAULT_PREFERRED_TIME
    email: str | None = None
    payment_phone: str | None = None
    tracks: list[str] = Field(default_factory=list)


class EnrollmentOut(BaseModel):
    user_id: str
    status: str
    subscription_plan: str
    subscription_expires_at: datetime.datetime | None
    payment_id: str | None = None
    checkout_request_id: str | None = None
    customer_message: str | None = None


@router.post("", response_model=EnrollmentOut, status_code=status.HTTP_201_CREATED)
async def create_enrollment(payload: EnrollmentIn, services: ServicesDep) -> EnrollmentOut:
    request = EnrollmentRequest(
        name=payload.name,
        whatsapp_number=payload.whatsapp_number,
        plan=payload.plan,
        preferred_time=payload.preferred_time,
        email=payload.email,
        payment_phone=payload.payment_phone,
        track_slugs=tuple(payload.tracks),
    )
    try:
        result = await services.orchestrator.start_enrollment(request)
    except ValidationError as e:
        logger.info("Enrollment rejected: %s", e)
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"field": e.field, "message": e.message},
        ) from None
    except GatewayError as e:
        logger.warning(
            "Enrollment checkout failed for %s: %s",
            phone.mask(phone.normalize(payload.whatsapp_number)),
            e,
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": str(e)},
        ) from None
    except LedgerError as e:
        raise ledger_unavailable(e) from None

    return EnrollmentOut(
        user_id=str(result.user.id),
        status=result.status,
        subscription_plan=result.user.subscription_plan.value,
        subscription_expires_at=result.user.subscription_expires_at,
        payment_id=str(result.payment.id) if result.payment else None,
        checkout_request_id=result.payment.checkout_request_id if result.payment else None,
        customer_message=result.customer_message,
    )
