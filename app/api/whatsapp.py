"""WhatsApp Cloud API webhook.

GET  is Meta's one-time verification handshake: echo ``hub.challenge``
     when ``hub.mode`` is ``subscribe`` and the token matches ours.
POST carries inbound messages and delivery statuses.  Once the envelope
     parses we answer 200, except for a ledger failure: that is a 503 so
     Meta redelivers, and ids that were routed are deduped on the retry.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from app.api.dependencies import ServicesDep, ledger_unavailable
from app.core.config import SETTINGS
from app.core.errors import CallbackParseError, LedgerError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/whatsapp", tags=["whatsapp"])


@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
) -> str:
    if (
        mode == "subscribe"
        and SETTINGS.whatsapp_verify_token
        and token == SETTINGS.whatsapp_verify_token
    ):
        logger.info("WhatsApp webhook verified")
        return challenge or ""
    logger.warning("WhatsApp webhook verification refused  mode=%s", mode)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.post("/webhook")
async def receive_webhook(request: Request, services: ServicesDep) -> dict:
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    try:
        outcomes = await services.router.handle_webhook(payload)
    except CallbackParseError as e:
        logger.warning("Rejected WhatsApp webhook: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Malformed webhook payload"},
        ) from None
    except LedgerError as e:
        raise ledger_unavailable(e) from None
    return {"status": "ok", "processed": len(outcomes)}
