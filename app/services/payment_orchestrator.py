"""Payment Orchestrator: plan selection to active subscription.

THE STATE MACHINE
------------------
  Selected --(paid plan)--> PushSent --(callback 0)--------> Completed
      |                        |
      |                        +--(callback != 0)----------> Failed
      |                        +--(push rejected/timeout)--> Failed
      +--(free plan)-------------------------------------> Completed

"PushSent" is a Payment row in ``pending`` with a CheckoutRequestID
attached.  Completed/Failed are terminal; a retry is a new checkout and a
new Payment row.

IDEMPOTENT CALLBACKS
---------------------
Daraja may deliver the same callback more than once, and a status probe
(``check_payment``) can race the real callback.  Both paths finish through
``_finalize``, which moves the Payment with a compare-and-set
``pending -> completed|failed``.  Only the caller that wins the CAS
extends the subscription and sends the confirmation, so a subscription is
extended exactly once per successful payment.
"""

from __future__ import annotations

import datetime
import enum
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from app.core.errors import CallbackParseError, GatewayError, ValidationError
from app.core.metrics import PAYMENT_EVENTS
from app.models.message import MessageType
from app.models.payment import Payment, PaymentStatus
from app.models.track import Track
from app.models.user import (
    DEFAULT_PREFERRED_TIME,
    PREFERRED_TIMES,
    SubscriptionPlan,
    SubscriptionStatus,
    User,
)
from app.repos.ledger import Ledger
from app.services import messages, phone
from app.services.mpesa_callback import parse_callback
from app.services.mpesa_client import PushResult, StatusResult
from app.services.notifier import Notifier
from app.services.plans import compute_expiry, plan_offer, resolve_plan

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    async def initiate_push(
        self,
        phone_number: str,
        amount: int,
        reference: str,
        description: str,
        callback_url: str,
    ) -> PushResult: ...

    async def query_status(self, checkout_request_id: str) -> StatusResult: ...


@dataclass(frozen=True, slots=True)
class EnrollmentRequest:
    name: str
    whatsapp_number: str
    plan: str
    preferred_time: str = DEFAULT_PREFERRED_TIME
    email: str | None = None
    payment_phone: str | None = None
    track_slugs: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class EnrollmentResult:
    user: User
    status: str  # "active" | "pending_payment"
    payment: Payment | None = None
    customer_message: str | None = None


class CallbackOutcome(str, enum.Enum):
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    COMPLETED = "completed"
    FAILED = "failed"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class PaymentOrchestrator:
    def __init__(
        self,
        ledger: Ledger,
        gateway: PaymentGateway,
        notifier: Notifier,
        *,
        callback_url: str,
        account_reference: str = "SkillBoost",
        clock=_utcnow,
    ) -> None:
        self._ledger = ledger
        self._gateway = gateway
        self._notifier = notifier
        self._callback_url = callback_url
        self._account_reference = account_reference
        self._clock = clock

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    async def _validate(
        self, request: EnrollmentRequest, now: datetime.datetime
    ) -> tuple[str, SubscriptionPlan, str | None, list[Track]]:
        if not request.name or not request.name.strip():
            raise ValidationError("name", "must be non-empty")

        if not phone.is_valid(request.whatsapp_number):
            raise ValidationError("whatsapp_number", "must be a Kenyan mobile number")
        address = phone.normalize(request.whatsapp_number)

        plan = resolve_plan(request.plan)
        if plan is None:
            raise ValidationError("plan", f"unknown plan {request.plan!r}")

        if request.preferred_time not in PREFERRED_TIMES:
            raise ValidationError(
                "preferred_time", f"must be one of {', '.join(PREFERRED_TIMES)}"
            )

        payer: str | None = None
        if plan_offer(plan).amount > 0:
            raw_payer = request.payment_phone or request.whatsapp_number
            if not phone.is_valid(raw_payer):
                raise ValidationError("payment_phone", "must be a Kenyan mobile number")
            payer = phone.normalize(raw_payer)

        if plan is SubscriptionPlan.FREE:
            await self._check_trial_eligible(address, now)

        tracks: list[Track] = []
        for slug in dict.fromkeys(request.track_slugs):
            track = await self._ledger.get_track_by_slug(slug)
            if track is None:
                raise ValidationError("track_slugs", f"unknown track {slug!r}")
            tracks.append(track)

        return address, plan, payer, tracks

    async def _check_trial_eligible(self, address: str, now: datetime.datetime) -> None:
        existing = await self._ledger.get_user_by_address(address)
        if existing is None or existing.subscription_expires_at is None:
            return
        if (
            existing.subscription_plan is not SubscriptionPlan.FREE
            and existing.effective_status(now) is not SubscriptionStatus.EXPIRED
            and existing.is_subscription_current(now)
        ):
            raise ValidationError("plan", "already on a paid subscription")
        # Any earlier expiry means a trial or a paid period was already used.
        raise ValidationError("plan", "free trial already used")

    async def start_enrollment(self, request: EnrollmentRequest) -> EnrollmentResult:
        """Register (or update) a subscriber and start their subscription.

        Raises ValidationError before any external call, GatewayError when a
        paid plan's STK push is rejected.
        """
        now = self._clock()
        address, plan, payer, tracks = await self._validate(request, now)

        user = await self._ledger.upsert_user(
            User.new(
                whatsapp_number=address,
                name=request.name.strip(),
                email=(request.email or "").strip() or None,
                preferred_time=request.preferred_time,
                now=now,
            )
        )
        for track in tracks:
            await self._ledger.enroll(user.id, track.id, now)

        offer = plan_offer(plan)
        if offer.amount == 0:
            user = await self._ledger.update_subscription(
                user.id,
                plan=plan,
                status=SubscriptionStatus.ACTIVE,
                expires_at=compute_expiry(plan, now),
                now=now,
            )
            await self._notifier.notify(
                user, MessageType.WELCOME, messages.welcome(user.name, offer.title)
            )
            logger.info(
                "Free trial activated",
                extra={"user_id": str(user.id)},
            )
            return EnrollmentResult(user=user, status="active")

        payment = await self.initiate_paid_checkout(user, plan, payer)
        return EnrollmentResult(
            user=user,
            status="pending_payment",
            payment=payment,
            customer_message="Check your phone and enter your M-Pesa PIN to complete payment.",
        )

    async def initiate_paid_checkout(
        self, user: User, plan: SubscriptionPlan, payer_phone: str
    ) -> Payment:
        offer = plan_offer(plan)
        now = self._clock()
        payment = await self._ledger.create_payment(
            Payment.new(
                user_id=user.id,
                amount=offer.amount,
                plan=plan,
                phone_number=payer_phone,
                now=now,
            )
        )
        PAYMENT_EVENTS.labels(event="created").inc()

        result = await self._gateway.initiate_push(
            payer_phone,
            offer.amount,
            self._account_reference,
            f"{offer.title} Subscription",
            self._callback_url,
        )

        if not result.success or not result.checkout_request_id:
            error = result.error or "STK Push error: not accepted"
            await self._ledger.transition_payment(
                payment.id,
                PaymentStatus.FAILED,
                now=self._clock(),
                result_desc=error,
            )
            PAYMENT_EVENTS.labels(event="push_failed").inc()
            logger.warning(
                "STK push rejected: %s",
                error,
                extra={"user_id": str(user.id), "payment_id": str(payment.id)},
            )
            raise GatewayError(error)

        payment = await self._ledger.attach_payment_correlation(
            payment.id,
            merchant_request_id=result.merchant_request_id,
            checkout_request_id=result.checkout_request_id,
            now=self._clock(),
        )
        logger.info(
            "Checkout started for %s",
            offer.title,
            extra={
                "user_id": str(user.id),
                "payment_id": str(payment.id),
                "checkout_request_id": result.checkout_request_id,
            },
        )
        return payment

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def handle_provider_callback(self, payload: Any) -> CallbackOutcome:
        """Apply an STK push result callback.

        Raises CallbackParseError (nothing mutated) on a malformed envelope.
        """
        try:
            result = parse_callback(payload)
        except CallbackParseError:
            PAYMENT_EVENTS.labels(event="parse_error").inc()
            raise

        payment = await self._ledger.get_payment_by_checkout_id(result.checkout_request_id)
        if payment is None:
            PAYMENT_EVENTS.labels(event="ignored").inc()
            logger.warning(
                "Callback for unknown checkout",
                extra={"checkout_request_id": result.checkout_request_id},
            )
            return CallbackOutcome.IGNORED

        if payment.status.is_terminal:
            PAYMENT_EVENTS.labels(event="duplicate").inc()
            logger.info(
                "Duplicate callback ignored",
                extra={"checkout_request_id": result.checkout_request_id},
            )
            return CallbackOutcome.DUPLICATE

        return await self._finalize(
            payment,
            success=result.success,
            receipt_number=result.receipt_number,
            result_desc=result.result_desc,
            amount=result.amount,
        )

    async def check_payment(self, checkout_request_id: str) -> Payment | None:
        """Current state of a checkout; probes Daraja while still pending."""
        payment = await self._ledger.get_payment_by_checkout_id(checkout_request_id)
        if payment is None or payment.status.is_terminal:
            return payment

        status = await self._gateway.query_status(checkout_request_id)
        if status.success and status.result_code is not None:
            await self._finalize(
                payment,
                success=status.result_code == 0,
                receipt_number=None,
                result_desc=status.result_desc,
                amount=None,
            )
            return await self._ledger.get_payment(payment.id)

        # Still processing on Daraja's side, or the probe itself failed.
        if status.error:
            logger.info(
                "Status probe inconclusive: %s",
                status.error,
                extra={"checkout_request_id": checkout_request_id},
            )
        return payment

    async def _finalize(
        self,
        payment: Payment,
        *,
        success: bool,
        receipt_number: str | None,
        result_desc: str | None,
        amount: float | None,
    ) -> CallbackOutcome:
        now = self._clock()
        target = PaymentStatus.COMPLETED if success else PaymentStatus.FAILED
        won = await self._ledger.transition_payment(
            payment.id,
            target,
            now=now,
            receipt_number=receipt_number,
            result_desc=result_desc,
        )
        log_extra = {
            "payment_id": str(payment.id),
            "user_id": str(payment.user_id),
            "checkout_request_id": payment.checkout_request_id,
        }
        if not won:
            PAYMENT_EVENTS.labels(event="duplicate").inc()
            logger.info("Payment already finalized", extra=log_extra)
            return CallbackOutcome.DUPLICATE

        if not success:
            PAYMENT_EVENTS.labels(event="failed").inc()
            logger.info("Payment failed: %s", result_desc, extra=log_extra)
            return CallbackOutcome.FAILED

        expires_at = compute_expiry(payment.plan, now)
        user = await self._ledger.update_subscription(
            payment.user_id,
            plan=payment.plan,
            status=SubscriptionStatus.ACTIVE,
            expires_at=expires_at,
            now=now,
        )
        PAYMENT_EVENTS.labels(event="completed").inc()
        logger.info("Payment completed, subscription extended", extra=log_extra)

        await self._notifier.notify(
            user,
            MessageType.PAYMENT,
            messages.payment_confirmation(
                user.name,
                plan_offer(payment.plan).title,
                amount if amount is not None else payment.amount,
                receipt_number,
                expires_at,
            ),
        )
        return CallbackOutcome.COMPLETED
