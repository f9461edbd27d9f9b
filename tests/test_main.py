from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from app.container import services as default_services
from app.main import app
from app.repos.ledger import InMemoryLedger
from app.services.whatsapp_client import InMemoryChannel


def test_app_title() -> None:
    assert app.title == "skillboost-core"


def test_default_container_runs_in_memory_without_config() -> None:
    assert isinstance(default_services.ledger, InMemoryLedger)
    assert isinstance(default_services.channel, InMemoryChannel)


def test_default_ledger_is_seeded_with_catalog() -> None:
    tracks = asyncio.run(default_services.ledger.list_tracks())
    assert {t.slug for t in tracks} == {"digital", "english", "business", "vocational"}


def test_routes_registered() -> None:
    paths = {route.path for route in app.routes}
    for path in (
        "/health",
        "/ready",
        "/metrics",
        "/v1/enrollments",
        "/v1/payments/mpesa/callback",
        "/v1/payments/{checkout_request_id}",
        "/v1/whatsapp/webhook",
        "/v1/scheduler/run",
    ):
        assert path in paths


def test_lifespan_closes_cleanly() -> None:
    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
