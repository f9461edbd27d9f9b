from __future__ import annotations

import datetime

import pytest
from fastapi.testclient import TestClient

from app.api.dependencies import get_services
from app.container import Services, build_services
from app.core.config import SETTINGS
from app.db.seed import LESSONS, TRACKS
from app.main import app
from app.models.user import SubscriptionPlan, SubscriptionStatus, User
from app.repos.ledger import InMemoryLedger
from app.services.cache import InMemoryCacheService, cache_service
from app.services.mpesa_client import PushResult, StatusResult
from app.services.whatsapp_client import InMemoryChannel

# 09:30 in Africa/Nairobi (UTC+3, no DST).
NOW = datetime.datetime(2025, 3, 10, 6, 30, tzinfo=datetime.UTC)

CHECKOUT_ID = "ws_CO_10032025093000001"


@pytest.fixture(autouse=True)
def reset_cache() -> None:
    """Clear the shared cache between tests."""
    if hasattr(cache_service, "_store"):
        cache_service._store.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_overrides():
    """Drop any services container a test plugged into the app."""
    yield
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: datetime.datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + datetime.timedelta(**kwargs)


class FakeGateway:
    """Stands in for Daraja.  Records every call."""

    def __init__(
        self,
        push: PushResult | None = None,
        status: StatusResult | None = None,
    ) -> None:
        self.push = push or PushResult(
            success=True,
            merchant_request_id="29115-34620561-1",
            checkout_request_id=CHECKOUT_ID,
            response_code="0",
            customer_message="Success. Request accepted for processing",
        )
        self.status = status or StatusResult(
            success=False, error="The transaction is being processed"
        )
        self.pushes: list[dict] = []
        self.queries: list[str] = []

    async def initiate_push(self, phone_number, amount, reference, description, callback_url):
        self.pushes.append(
            {
                "phone_number": phone_number,
                "amount": amount,
                "reference": reference,
                "description": description,
                "callback_url": callback_url,
            }
        )
        return self.push

    async def query_status(self, checkout_request_id):
        self.queries.append(checkout_request_id)
        return self.status


async def no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_ledger() -> InMemoryLedger:
    ledger = InMemoryLedger()
    ledger.load_catalog(TRACKS, LESSONS)
    return ledger


def make_services(
    *,
    gateway: FakeGateway | None = None,
    channel: InMemoryChannel | None = None,
    clock: FakeClock | None = None,
) -> Services:
    return build_services(
        SETTINGS,
        ledger=make_ledger(),
        channel=channel or InMemoryChannel(),
        gateway=gateway or FakeGateway(),
        cache=InMemoryCacheService(),
        clock=clock or FakeClock(),
        sleep=no_sleep,
    )


async def add_user(
    ledger: InMemoryLedger,
    *,
    whatsapp_number: str = "+254722000111",
    name: str = "Wanjiku",
    preferred_time: str = "9:00 AM",
    plan: SubscriptionPlan = SubscriptionPlan.WEEKLY,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    expires_at: datetime.datetime | None = NOW + datetime.timedelta(days=5),
    now: datetime.datetime = NOW,
) -> User:
    user = await ledger.upsert_user(
        User.new(
            whatsapp_number=whatsapp_number,
            name=name,
            preferred_time=preferred_time,
            now=now,
        )
    )
    return await ledger.update_subscription(
        user.id, plan=plan, status=status, expires_at=expires_at, now=now
    )


def stk_callback(
    result_code: int = 0,
    checkout_request_id: str = CHECKOUT_ID,
    receipt: str = "NLJ7RT61SV",
    amount: float = 50,
) -> dict:
    callback: dict = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": (
            "The service request is processed successfully."
            if result_code == 0
            else "Request cancelled by user"
        ),
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20250310093015},
                {"Name": "PhoneNumber", "Value": 254722000111},
            ]
        }
    return {"Body": {"stkCallback": callback}}


def inbound_webhook(sender: str, body: str, message_id: str = "wamid.HBgM001") -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "1029384756",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "messages": [
                                {
                                    "id": message_id,
                                    "from": sender,
                                    "timestamp": "1741588200",
                                    "type": "text",
                                    "text": {"body": body},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def services() -> Services:
    return make_services()


@pytest.fixture
def client(services: Services) -> TestClient:
    app.dependency_overrides[get_services] = lambda: services
    return TestClient(app)
