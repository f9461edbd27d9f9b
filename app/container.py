"""Service wiring.

Builds the ledger, the provider clients and the three core services from
Settings, choosing the in-memory variants when a backing service is not
configured:

  DATABASE_URL unset           -> InMemoryLedger seeded with the catalog
  WHATSAPP_ACCESS_TOKEN unset  -> InMemoryChannel (messages are recorded)
  REDIS_URL unset              -> in-memory cache (see app.services.cache)

The API and the worker share the module-level ``services`` singleton.
Tests build their own with injected fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.core.config import SETTINGS, Settings
from app.db import engine as db_engine
from app.db.seed import LESSONS, TRACKS
from app.repos.ledger import InMemoryLedger, Ledger
from app.repos.pg_ledger import PgLedger
from app.services.cache import CacheService, cache_service
from app.services.command_router import CommandRouter
from app.services.lesson_scheduler import LessonScheduler
from app.services.mpesa_client import MpesaClient
from app.services.notifier import Notifier
from app.services.payment_orchestrator import PaymentGateway, PaymentOrchestrator
from app.services.whatsapp_client import InMemoryChannel, OutboundChannel, WhatsAppChannel

logger = logging.getLogger(__name__)


@dataclass
class Services:
    ledger: Ledger
    channel: OutboundChannel
    gateway: PaymentGateway
    cache: CacheService
    notifier: Notifier
    orchestrator: PaymentOrchestrator
    router: CommandRouter
    scheduler: LessonScheduler

    async def aclose(self) -> None:
        for client in (self.gateway, self.channel):
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()


def _default_ledger(settings: Settings) -> Ledger:
    if settings.database_url and db_engine.async_session_factory is not None:
        return PgLedger(db_engine.async_session_factory)
    ledger = InMemoryLedger()
    ledger.load_catalog(TRACKS, LESSONS)
    return ledger


def _default_channel(settings: Settings) -> OutboundChannel:
    if settings.whatsapp_access_token and settings.whatsapp_phone_number_id:
        return WhatsAppChannel(
            access_token=settings.whatsapp_access_token,
            phone_number_id=settings.whatsapp_phone_number_id,
            timeout=settings.whatsapp_timeout_seconds,
        )
    logger.info("WhatsApp not configured, outbound messages are recorded in memory")
    return InMemoryChannel()


def build_services(
    settings: Settings,
    *,
    ledger: Ledger | None = None,
    channel: OutboundChannel | None = None,
    gateway: PaymentGateway | None = None,
    cache: CacheService | None = None,
    clock=None,
    sleep=None,
) -> Services:
    ledger = ledger if ledger is not None else _default_ledger(settings)
    channel = channel if channel is not None else _default_channel(settings)
    cache = cache if cache is not None else cache_service
    if gateway is None:
        gateway = MpesaClient(
            base_url=settings.mpesa_base_url,
            consumer_key=settings.mpesa_consumer_key,
            consumer_secret=settings.mpesa_consumer_secret,
            shortcode=settings.mpesa_shortcode,
            passkey=settings.mpesa_passkey,
            timeout=settings.mpesa_timeout_seconds,
            token_cache=cache if settings.mpesa_cache_token else None,
        )

    clock_kw = {"clock": clock} if clock is not None else {}
    notifier = Notifier(ledger, channel, **clock_kw)
    orchestrator = PaymentOrchestrator(
        ledger,
        gateway,
        notifier,
        callback_url=settings.mpesa_callback_url,
        account_reference=settings.mpesa_account_reference,
        **clock_kw,
    )
    router = CommandRouter(ledger, notifier, channel, cache, **clock_kw)
    scheduler_kw = dict(clock_kw)
    if sleep is not None:
        scheduler_kw["sleep"] = sleep
    scheduler = LessonScheduler(
        ledger,
        notifier,
        timezone=settings.scheduler_timezone,
        concurrency=settings.scheduler_concurrency,
        send_delay=settings.scheduler_send_delay_seconds,
        **scheduler_kw,
    )
    return Services(
        ledger=ledger,
        channel=channel,
        gateway=gateway,
        cache=cache,
        notifier=notifier,
        orchestrator=orchestrator,
        router=router,
        scheduler=scheduler,
    )


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------


services = build_services(SETTINGS)
