from __future__ import annotations

import asyncio
import dataclasses

import pytest
from fastapi.testclient import TestClient

from app.container import Services
from app.core.config import SETTINGS
from app.core.errors import LedgerError
from app.models.user import SubscriptionStatus
from tests.conftest import add_user, inbound_webhook


@pytest.fixture
def verify_token(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setattr(
        "app.api.whatsapp.SETTINGS",
        dataclasses.replace(SETTINGS, whatsapp_verify_token="s3cret"),
    )
    return "s3cret"


def test_verification_echoes_challenge(client: TestClient, verify_token: str) -> None:
    resp = client.get(
        "/v1/whatsapp/webhook",
        params={
            "hub.mode": "subscribe",
            "hub.verify_token": verify_token,
            "hub.challenge": "1158201444",
        },
    )
    assert resp.status_code == 200
    assert resp.text == "1158201444"


def test_verification_rejects_wrong_token(client: TestClient, verify_token: str) -> None:
    resp = client.get(
        "/v1/whatsapp/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "1"},
    )
    assert resp.status_code == 403


def test_verification_refused_when_no_token_configured(client: TestClient) -> None:
    resp = client.get(
        "/v1/whatsapp/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "", "hub.challenge": "1"},
    )
    assert resp.status_code == 403


def test_inbound_pause(client: TestClient, services: Services) -> None:
    user = asyncio.run(add_user(services.ledger))

    resp = client.post("/v1/whatsapp/webhook", json=inbound_webhook("254722000111", "PAUSE"))
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "processed": 1}

    stored = asyncio.run(services.ledger.get_user(user.id))
    assert stored.subscription_status is SubscriptionStatus.INACTIVE


def test_redelivered_webhook_replies_once(client: TestClient, services: Services) -> None:
    asyncio.run(add_user(services.ledger))
    payload = inbound_webhook("254722000111", "HELP", message_id="wamid.redelivered")

    client.post("/v1/whatsapp/webhook", json=payload)
    client.post("/v1/whatsapp/webhook", json=payload)

    assert len(services.channel.messages_to("+254722000111")) == 1


def test_unknown_sender_onboarded(client: TestClient, services: Services) -> None:
    resp = client.post("/v1/whatsapp/webhook", json=inbound_webhook("254799000111", "hi"))
    assert resp.status_code == 200
    assert len(services.channel.messages_to("+254799000111")) == 1


def test_malformed_webhook_returns_400(client: TestClient) -> None:
    resp = client.post("/v1/whatsapp/webhook", json={"entry": "nope"})
    assert resp.status_code == 400


def test_ledger_outage_returns_503_and_redelivery_is_routed(
    client: TestClient, services: Services, monkeypatch: pytest.MonkeyPatch
) -> None:
    user = asyncio.run(add_user(services.ledger))
    lookup = services.ledger.get_user_by_address
    failures = [LedgerError("database error: OperationalError")]

    async def flaky_lookup(address: str):
        if failures:
            raise failures.pop()
        return await lookup(address)

    monkeypatch.setattr(services.ledger, "get_user_by_address", flaky_lookup)
    payload = inbound_webhook("254722000111", "PAUSE", message_id="wamid.outage")

    first = client.post("/v1/whatsapp/webhook", json=payload)
    assert first.status_code == 503

    second = client.post("/v1/whatsapp/webhook", json=payload)
    assert second.status_code == 200
    stored = asyncio.run(services.ledger.get_user(user.id))
    assert stored.subscription_status is SubscriptionStatus.INACTIVE
