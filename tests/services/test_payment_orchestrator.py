from __future__ import annotations

import asyncio
import datetime

import pytest

from app.core.errors import CallbackParseError, GatewayError, ValidationError
from app.models.message import MessageType
from app.models.payment import PaymentStatus
from app.models.user import SubscriptionPlan, SubscriptionStatus
from app.services.mpesa_client import PushResult, StatusResult
from app.services.payment_orchestrator import CallbackOutcome, EnrollmentRequest
from app.services.whatsapp_client import InMemoryChannel
from tests.conftest import (
    CHECKOUT_ID,
    NOW,
    FakeClock,
    FakeGateway,
    add_user,
    make_services,
    stk_callback,
)

ADDRESS = "+254722000111"


def _request(plan: str = "weekly", **overrides) -> EnrollmentRequest:
    fields = {
        "name": "Wanjiku",
        "whatsapp_number": "0722 000 111",
        "plan": plan,
        "preferred_time": "9:00 AM",
        "track_slugs": ("digital",),
    }
    fields.update(overrides)
    return EnrollmentRequest(**fields)


# ---- free trial ----


def test_free_trial_activates_without_gateway() -> None:
    gateway = FakeGateway()
    channel = InMemoryChannel()
    services = make_services(gateway=gateway, channel=channel)

    result = asyncio.run(services.orchestrator.start_enrollment(_request("free")))

    assert result.status == "active"
    assert result.payment is None
    assert result.user.whatsapp_number == ADDRESS
    assert result.user.subscription_status is SubscriptionStatus.ACTIVE
    assert result.user.subscription_plan is SubscriptionPlan.FREE
    assert result.user.subscription_expires_at == NOW + datetime.timedelta(days=3)
    assert gateway.pushes == []
    assert len(channel.messages_to(ADDRESS)) == 1
    assert "Free Trial" in channel.messages_to(ADDRESS)[0]
    assert [m.message_type for m in services.ledger.messages] == [MessageType.WELCOME]

    enrollments = asyncio.run(services.ledger.list_active_enrollments(result.user.id))
    assert len(enrollments) == 1


# ---- paid checkout ----


def test_paid_plan_starts_checkout() -> None:
    gateway = FakeGateway()
    services = make_services(gateway=gateway)

    result = asyncio.run(services.orchestrator.start_enrollment(_request("Weekly Plan")))

    assert result.status == "pending_payment"
    assert result.payment is not None
    assert result.payment.status is PaymentStatus.PENDING
    assert result.payment.checkout_request_id == CHECKOUT_ID
    assert result.payment.amount == 50
    assert result.user.subscription_status is SubscriptionStatus.INACTIVE
    assert gateway.pushes == [
        {
            "phone_number": ADDRESS,
            "amount": 50,
            "reference": "SkillBoost",
            "description": "Weekly Plan Subscription",
            "callback_url": services.orchestrator._callback_url,
        }
    ]


def test_payer_phone_may_differ_from_whatsapp_number() -> None:
    gateway = FakeGateway()
    services = make_services(gateway=gateway)
    asyncio.run(
        services.orchestrator.start_enrollment(
            _request("monthly", payment_phone="0799 123 456")
        )
    )
    assert gateway.pushes[0]["phone_number"] == "+254799123456"
    assert gateway.pushes[0]["amount"] == 150


def test_push_failure_marks_payment_failed() -> None:
    gateway = FakeGateway(push=PushResult(success=False, error="STK Push error: Invalid Access Token"))
    channel = InMemoryChannel()
    services = make_services(gateway=gateway, channel=channel)

    with pytest.raises(GatewayError, match="Invalid Access Token"):
        asyncio.run(services.orchestrator.start_enrollment(_request("weekly")))

    payments = list(services.ledger._payments.values())
    assert len(payments) == 1
    assert payments[0].status is PaymentStatus.FAILED
    assert payments[0].result_desc == "STK Push error: Invalid Access Token"
    user = asyncio.run(services.ledger.get_user_by_address(ADDRESS))
    assert user.subscription_status is SubscriptionStatus.INACTIVE
    assert channel.sent == []


@pytest.mark.parametrize(
    ("overrides", "field"),
    [
        ({"name": "   "}, "name"),
        ({"whatsapp_number": "12345"}, "whatsapp_number"),
        ({"plan": "quarterly"}, "plan"),
        ({"preferred_time": "3:00 AM"}, "preferred_time"),
        ({"payment_phone": "0112 000 000"}, "payment_phone"),
        ({"track_slugs": ("astrology",)}, "track_slugs"),
    ],
)
def test_invalid_requests_rejected_before_side_effects(overrides: dict, field: str) -> None:
    gateway = FakeGateway()
    services = make_services(gateway=gateway)

    with pytest.raises(ValidationError) as exc_info:
        asyncio.run(services.orchestrator.start_enrollment(_request(**{"plan": "weekly", **overrides})))

    assert exc_info.value.field == field
    assert gateway.pushes == []
    assert asyncio.run(services.ledger.get_user_by_address(ADDRESS)) is None


def test_re_enrolling_keeps_the_same_user() -> None:
    services = make_services()

    async def _run():
        first = await services.orchestrator.start_enrollment(_request("free"))
        second = await services.orchestrator.start_enrollment(
            _request("weekly", name="Wanjiku M.", track_slugs=("digital", "english"))
        )
        return first, second

    first, second = asyncio.run(_run())
    assert second.user.id == first.user.id
    assert second.user.name == "Wanjiku M."
    enrollments = asyncio.run(services.ledger.list_active_enrollments(first.user.id))
    assert len(enrollments) == 2


def test_free_trial_cannot_overwrite_a_current_paid_period() -> None:
    gateway = FakeGateway()
    channel = InMemoryChannel()
    services = make_services(gateway=gateway, channel=channel)
    paid_until = NOW + datetime.timedelta(days=25)

    async def _run():
        await add_user(services.ledger, plan=SubscriptionPlan.MONTHLY, expires_at=paid_until)
        with pytest.raises(ValidationError) as exc_info:
            await services.orchestrator.start_enrollment(_request("free"))
        return exc_info.value, await services.ledger.get_user_by_address(ADDRESS)

    error, user = asyncio.run(_run())
    assert error.field == "plan"
    assert user.subscription_plan is SubscriptionPlan.MONTHLY
    assert user.subscription_expires_at == paid_until
    assert channel.sent == []


@pytest.mark.parametrize(
    ("plan", "status", "expires_at"),
    [
        (SubscriptionPlan.FREE, SubscriptionStatus.ACTIVE, NOW + datetime.timedelta(days=2)),
        (SubscriptionPlan.FREE, SubscriptionStatus.EXPIRED, NOW - datetime.timedelta(days=4)),
        (SubscriptionPlan.WEEKLY, SubscriptionStatus.EXPIRED, NOW - datetime.timedelta(days=1)),
    ],
)
def test_second_free_trial_is_refused(plan, status, expires_at) -> None:
    services = make_services()

    async def _run():
        await add_user(services.ledger, plan=plan, status=status, expires_at=expires_at)
        with pytest.raises(ValidationError, match="free trial already used"):
            await services.orchestrator.start_enrollment(_request("free"))
        return await services.ledger.get_user_by_address(ADDRESS)

    user = asyncio.run(_run())
    assert user.subscription_plan is plan
    assert user.subscription_expires_at == expires_at


def test_lapsed_paid_subscriber_can_still_renew() -> None:
    gateway = FakeGateway()
    services = make_services(gateway=gateway)

    async def _run():
        await add_user(
            services.ledger,
            status=SubscriptionStatus.EXPIRED,
            expires_at=NOW - datetime.timedelta(days=1),
        )
        return await services.orchestrator.start_enrollment(_request("weekly"))

    result = asyncio.run(_run())
    assert result.status == "pending_payment"
    assert len(gateway.pushes) == 1


# ---- callbacks ----


def test_successful_callback_extends_subscription_once() -> None:
    clock = FakeClock()
    channel = InMemoryChannel()
    services = make_services(channel=channel, clock=clock)
    orchestrator = services.orchestrator

    async def _run():
        enrolled = await orchestrator.start_enrollment(_request("weekly"))
        first = await orchestrator.handle_provider_callback(stk_callback(0))
        after_first = await services.ledger.get_user(enrolled.user.id)
        clock.advance(minutes=2)
        second = await orchestrator.handle_provider_callback(stk_callback(0))
        after_second = await services.ledger.get_user(enrolled.user.id)
        return first, second, after_first, after_second

    first, second, after_first, after_second = asyncio.run(_run())

    assert first is CallbackOutcome.COMPLETED
    assert second is CallbackOutcome.DUPLICATE
    assert after_first.subscription_status is SubscriptionStatus.ACTIVE
    assert after_first.subscription_plan is SubscriptionPlan.WEEKLY
    assert after_first.subscription_expires_at == NOW + datetime.timedelta(days=7)
    assert after_second.subscription_expires_at == after_first.subscription_expires_at

    payment = asyncio.run(services.ledger.get_payment_by_checkout_id(CHECKOUT_ID))
    assert payment.status is PaymentStatus.COMPLETED
    assert payment.mpesa_receipt_number == "NLJ7RT61SV"

    confirmations = [m for m in services.ledger.messages if m.message_type is MessageType.PAYMENT]
    assert len(confirmations) == 1
    assert "NLJ7RT61SV" in confirmations[0].content
    assert "KES 50" in confirmations[0].content


def test_failed_callback_leaves_subscription_alone() -> None:
    channel = InMemoryChannel()
    services = make_services(channel=channel)

    async def _run():
        enrolled = await services.orchestrator.start_enrollment(_request("weekly"))
        outcome = await services.orchestrator.handle_provider_callback(stk_callback(1032))
        return outcome, await services.ledger.get_user(enrolled.user.id)

    outcome, user = asyncio.run(_run())
    assert outcome is CallbackOutcome.FAILED
    assert user.subscription_status is SubscriptionStatus.INACTIVE
    assert user.subscription_expires_at is None
    payment = asyncio.run(services.ledger.get_payment_by_checkout_id(CHECKOUT_ID))
    assert payment.status is PaymentStatus.FAILED
    assert payment.result_desc == "Request cancelled by user"
    assert channel.sent == []


def test_callback_for_unknown_checkout_is_ignored() -> None:
    services = make_services()
    outcome = asyncio.run(
        services.orchestrator.handle_provider_callback(stk_callback(0, "ws_CO_unknown"))
    )
    assert outcome is CallbackOutcome.IGNORED


def test_malformed_callback_raises() -> None:
    services = make_services()
    with pytest.raises(CallbackParseError):
        asyncio.run(services.orchestrator.handle_provider_callback({"Body": {}}))


def test_concurrent_callbacks_extend_once() -> None:
    services = make_services()

    async def _run():
        await services.orchestrator.start_enrollment(_request("monthly"))
        return await asyncio.gather(
            *(services.orchestrator.handle_provider_callback(stk_callback(0)) for _ in range(3))
        )

    outcomes = asyncio.run(_run())
    assert sorted(o.value for o in outcomes) == ["completed", "duplicate", "duplicate"]
    payments = [m for m in services.ledger.messages if m.message_type is MessageType.PAYMENT]
    assert len(payments) == 1


# ---- status probe ----


def test_check_payment_finalizes_from_status_query() -> None:
    gateway = FakeGateway(status=StatusResult(success=True, result_code=0, result_desc="Processed"))
    services = make_services(gateway=gateway)

    async def _run():
        enrolled = await services.orchestrator.start_enrollment(_request("weekly"))
        payment = await services.orchestrator.check_payment(CHECKOUT_ID)
        # A late callback after the probe won must not extend again.
        late = await services.orchestrator.handle_provider_callback(stk_callback(0))
        return enrolled, payment, late, await services.ledger.get_user(enrolled.user.id)

    enrolled, payment, late, user = asyncio.run(_run())
    assert payment.status is PaymentStatus.COMPLETED
    assert late is CallbackOutcome.DUPLICATE
    assert user.subscription_status is SubscriptionStatus.ACTIVE
    assert gateway.queries == [CHECKOUT_ID]
    payments = [m for m in services.ledger.messages if m.message_type is MessageType.PAYMENT]
    assert len(payments) == 1


def test_check_payment_pending_while_processing() -> None:
    gateway = FakeGateway()
    services = make_services(gateway=gateway)

    async def _run():
        await services.orchestrator.start_enrollment(_request("weekly"))
        return await services.orchestrator.check_payment(CHECKOUT_ID)

    payment = asyncio.run(_run())
    assert payment.status is PaymentStatus.PENDING
    assert gateway.queries == [CHECKOUT_ID]


def test_check_payment_does_not_probe_terminal_payments() -> None:
    gateway = FakeGateway()
    services = make_services(gateway=gateway)

    async def _run():
        await services.orchestrator.start_enrollment(_request("weekly"))
        await services.orchestrator.handle_provider_callback(stk_callback(1032))
        return await services.orchestrator.check_payment(CHECKOUT_ID)

    payment = asyncio.run(_run())
    assert payment.status is PaymentStatus.FAILED
    assert gateway.queries == []


def test_check_payment_unknown_checkout() -> None:
    services = make_services()
    assert asyncio.run(services.orchestrator.check_payment("ws_CO_nope")) is None
