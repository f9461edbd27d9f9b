"""WhatsApp Command Router: inbound text to subscription action and reply.

Inbound messages arrive on the Graph API webhook as::

    {"object": "whatsapp_business_account",
     "entry": [{"changes": [{"field": "messages", "value": {
         "messages": [{"id": "wamid...", "from": "254712345678",
                       "type": "text", "text": {"body": "PAUSE"}}]}}]}]}

Each text body is normalized (trimmed, lowercased) and looked up in a
closed keyword table; anything not in the table is FALLBACK.  Every
dispatched intent produces exactly one ``response`` OutboundMessage.

Senders with no User record get a single onboarding pointer per 24h and
nothing else; no record is created for them.  The Graph API redelivers
webhooks it considers failed, so message ids already routed are skipped.
"""

from __future__ import annotations

import datetime
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import CallbackParseError, ChannelError, LedgerError
from app.core.metrics import INBOUND_COMMANDS
from app.models.message import MessageType, OutboundMessage
from app.models.track import progress_percent
from app.models.user import SubscriptionStatus, User
from app.repos.ledger import Ledger
from app.services import messages, phone
from app.services.cache import CacheService
from app.services.notifier import Notifier
from app.services.whatsapp_client import OutboundChannel

logger = logging.getLogger(__name__)

_SEEN_TTL_SECONDS = 24 * 3600
_ONBOARDING_TTL_SECONDS = 24 * 3600


class Intent(str, enum.Enum):
    HELP = "help"
    PAUSE = "pause"
    RESUME = "resume"
    PROGRESS = "progress"
    PREVIEW = "preview"
    CATALOG = "catalog"
    PAYMENT_CHECK = "payment_check"
    FALLBACK = "fallback"


_KEYWORDS: dict[str, Intent] = {
    "help": Intent.HELP,
    "pause": Intent.PAUSE,
    "stop": Intent.PAUSE,
    "resume": Intent.RESUME,
    "start": Intent.RESUME,
    "progress": Intent.PROGRESS,
    "stats": Intent.PROGRESS,
    "next": Intent.PREVIEW,
    "tracks": Intent.CATALOG,
    "courses": Intent.CATALOG,
    "paid": Intent.PAYMENT_CHECK,
}


def parse_intent(text: str | None) -> Intent | None:
    """None for a missing or blank body (media messages have none)."""
    if text is None:
        return None
    normalized = text.strip().lower()
    if not normalized:
        return None
    return _KEYWORDS.get(normalized, Intent.FALLBACK)


@dataclass(frozen=True, slots=True)
class RouteOutcome:
    action: str  # replied|onboarding|throttled|unroutable|duplicate|error
    intent: Intent | None = None
    reply: OutboundMessage | None = None


# --- Webhook envelope ---


class _Text(BaseModel):
    body: str | None = None


class _InboundMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    sender: str = Field(alias="from")
    type: str = "text"
    text: _Text | None = None


class _Value(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messages: list[_InboundMessage] = Field(default_factory=list)


class _Change(BaseModel):
    value: _Value
    field: str | None = None


class _Entry(BaseModel):
    changes: list[_Change] = Field(default_factory=list)


class _WebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    entry: list[_Entry] = Field(default_factory=list)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class CommandRouter:
    def __init__(
        self,
        ledger: Ledger,
        notifier: Notifier,
        channel: OutboundChannel,
        cache: CacheService,
        clock=_utcnow,
    ) -> None:
        self._ledger = ledger
        self._notifier = notifier
        self._channel = channel
        self._cache = cache
        self._clock = clock
        self._handlers: dict[Intent, Callable[[User, datetime.datetime], Awaitable[str]]] = {
            Intent.HELP: self._help,
            Intent.PAUSE: self._pause,
            Intent.RESUME: self._resume,
            Intent.PROGRESS: self._progress,
            Intent.PREVIEW: self._preview,
            Intent.CATALOG: self._catalog,
            Intent.PAYMENT_CHECK: self._payment_check,
            Intent.FALLBACK: self._fallback,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_webhook(self, payload: Any) -> list[RouteOutcome]:
        """Route every message in a webhook delivery.

        Raises CallbackParseError on a malformed envelope.  A failure on one
        message is logged, its id is released for redelivery and the rest
        are still routed; if any of them failed on the ledger, the first
        LedgerError is raised once the batch is done.
        """
        try:
            envelope = _WebhookEnvelope.model_validate(payload)
        except PydanticValidationError as e:
            raise CallbackParseError(
                f"malformed WhatsApp webhook: {e.error_count()} error(s)"
            ) from e

        outcomes: list[RouteOutcome] = []
        ledger_error: LedgerError | None = None
        for entry in envelope.entry:
            for change in entry.changes:
                for message in change.value.messages:
                    seen_key = f"wa:seen:{message.id}"
                    if not await self._cache.add(seen_key, "1", _SEEN_TTL_SECONDS):
                        outcomes.append(RouteOutcome(action="duplicate"))
                        continue
                    body = message.text.body if message.type == "text" and message.text else None
                    try:
                        outcomes.append(await self.handle_message(message.sender, body))
                    except Exception as e:
                        # Unclaim so a redelivery is routed instead of deduped.
                        await self._cache.delete(seen_key)
                        logger.exception(
                            "Failed to route inbound message from %s",
                            phone.mask(phone.normalize(message.sender)),
                        )
                        outcomes.append(RouteOutcome(action="error"))
                        if isinstance(e, LedgerError) and ledger_error is None:
                            ledger_error = e
        if ledger_error is not None:
            raise ledger_error
        return outcomes

    async def handle_message(self, sender: str, text: str | None) -> RouteOutcome:
        address = phone.normalize(sender)
        intent = parse_intent(text)
        if intent is None:
            logger.debug("Unroutable message from %s", phone.mask(address))
            return RouteOutcome(action="unroutable")

        user = await self._ledger.get_user_by_address(address)
        if user is None:
            return await self._onboard(address)

        INBOUND_COMMANDS.labels(intent=intent.value).inc()
        now = self._clock()
        reply_text = await self._handlers[intent](user, now)
        reply = await self._notifier.notify(user, MessageType.RESPONSE, reply_text)
        logger.info(
            "Routed inbound command",
            extra={"user_id": str(user.id), "intent": intent.value},
        )
        return RouteOutcome(action="replied", intent=intent, reply=reply)

    async def _onboard(self, address: str) -> RouteOutcome:
        if not await self._cache.add(
            f"wa:onboarding:{address}", "1", _ONBOARDING_TTL_SECONDS
        ):
            return RouteOutcome(action="throttled")
        try:
            await self._channel.send(address, messages.onboarding())
        except ChannelError as e:
            logger.warning("Onboarding pointer to %s failed: %s", phone.mask(address), e)
        return RouteOutcome(action="onboarding")

    # ------------------------------------------------------------------
    # Intent handlers
    # ------------------------------------------------------------------

    async def _help(self, user: User, now: datetime.datetime) -> str:
        return messages.help_menu()

    async def _pause(self, user: User, now: datetime.datetime) -> str:
        if user.effective_status(now) is SubscriptionStatus.EXPIRED:
            return messages.subscription_expired(user.name)
        paused = await self._ledger.set_subscription_status(
            user.id,
            SubscriptionStatus.INACTIVE,
            expected=(SubscriptionStatus.ACTIVE, SubscriptionStatus.INACTIVE),
            now=now,
        )
        if not paused:
            return messages.subscription_expired(user.name)
        return messages.paused()

    async def _resume(self, user: User, now: datetime.datetime) -> str:
        # Resuming needs a paid-up period; a never-paid user has no expiry.
        expires_at = user.subscription_expires_at
        if (
            user.effective_status(now) is SubscriptionStatus.EXPIRED
            or expires_at is None
            or expires_at < now
        ):
            return messages.subscription_expired(user.name)
        resumed = await self._ledger.set_subscription_status(
            user.id,
            SubscriptionStatus.ACTIVE,
            expected=(SubscriptionStatus.INACTIVE, SubscriptionStatus.ACTIVE),
            now=now,
        )
        if not resumed:
            return messages.subscription_expired(user.name)
        return messages.resumed(user.name, user.preferred_time)

    async def _progress(self, user: User, now: datetime.datetime) -> str:
        lines = []
        for enrollment in await self._ledger.list_active_enrollments(user.id):
            track = await self._ledger.get_track(enrollment.track_id)
            if track is None:
                continue
            done = await self._ledger.completed_lesson_ids(user.id, track.id)
            lines.append((track, progress_percent(len(done), track.total_lessons)))
        return messages.progress_report(user.name, lines)

    async def _preview(self, user: User, now: datetime.datetime) -> str:
        previews = []
        for enrollment in await self._ledger.list_active_enrollments(user.id):
            track = await self._ledger.get_track(enrollment.track_id)
            if track is None:
                continue
            done = await self._ledger.completed_lesson_ids(user.id, track.id)
            previews.append((track, await self._ledger.next_lesson(track.id, done)))
        return messages.next_lesson_preview(previews)

    async def _catalog(self, user: User, now: datetime.datetime) -> str:
        return messages.track_catalog(await self._ledger.list_tracks())

    async def _payment_check(self, user: User, now: datetime.datetime) -> str:
        return messages.payment_check()

    async def _fallback(self, user: User, now: datetime.datetime) -> str:
        return messages.fallback()
