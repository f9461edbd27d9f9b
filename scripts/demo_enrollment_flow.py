"""Demo: free trial, paid checkout and WhatsApp commands against the API.

Runs fully in memory: Daraja is replaced by a canned gateway and the
WhatsApp channel records messages instead of sending them.

Run with:
    python scripts/demo_enrollment_flow.py
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from app.api.dependencies import get_services
from app.container import build_services
from app.core.config import SETTINGS
from app.main import app
from app.services.mpesa_client import PushResult, StatusResult
from app.services.whatsapp_client import InMemoryChannel

CHECKOUT_ID = "ws_CO_DEMO_0001"


class CannedGateway:
    async def initiate_push(self, phone_number, amount, reference, description, callback_url):
        return PushResult(
            success=True,
            merchant_request_id="29115-DEMO-1",
            checkout_request_id=CHECKOUT_ID,
            response_code="0",
        )

    async def query_status(self, checkout_request_id):
        return StatusResult(success=False, error="The transaction is being processed")


def _callback(result_code: int) -> dict:
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-DEMO-1",
                "CheckoutRequestID": CHECKOUT_ID,
                "ResultCode": result_code,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": 50},
                        {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                        {"Name": "PhoneNumber", "Value": 254722000111},
                    ]
                },
            }
        }
    }


def _inbound(sender: str, message_id: str, body: str) -> dict:
    return {
        "entry": [
            {
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messages": [
                                {"id": message_id, "from": sender, "type": "text",
                                 "text": {"body": body}}
                            ]
                        },
                    }
                ]
            }
        ]
    }


def main() -> None:
    channel = InMemoryChannel()
    demo = build_services(SETTINGS, channel=channel, gateway=CannedGateway())
    app.dependency_overrides[get_services] = lambda: demo
    client = TestClient(app)

    # ── Step 1: free trial ──────────────────────────────────────────
    r = client.post(
        "/v1/enrollments",
        json={"name": "Amina", "whatsapp_number": "0711000222", "plan": "Free Trial",
              "tracks": ["digital"]},
    )
    print(f"1. POST /v1/enrollments (free)    → {r.status_code}  {r.json()['status']}")

    # ── Step 2: paid plan, STK push ─────────────────────────────────
    r = client.post(
        "/v1/enrollments",
        json={"name": "Brian", "whatsapp_number": "0722000111", "plan": "weekly",
              "tracks": ["english", "business"]},
    )
    print(f"2. POST /v1/enrollments (weekly)  → {r.status_code}  {r.json()['status']}")

    r = client.get(f"/v1/payments/{CHECKOUT_ID}")
    print(f"3. GET  /v1/payments/…            → {r.json()['status']}")

    # ── Step 3: Daraja calls back (twice) ───────────────────────────
    for attempt in (1, 2):
        r = client.post("/v1/payments/mpesa/callback", json=_callback(0))
        print(f"4.{attempt} POST callback                 → {r.json()}")

    r = client.get(f"/v1/payments/{CHECKOUT_ID}")
    print(f"5. GET  /v1/payments/…            → {r.json()['status']}")

    # ── Step 4: WhatsApp commands ───────────────────────────────────
    for i, body in enumerate(("PROGRESS", "next", "pause ", "RESUME")):
        r = client.post("/v1/whatsapp/webhook", json=_inbound("254722000111", f"wamid.{i}", body))
        print(f"6.{i} WhatsApp {body!r:<11}          → {r.json()}")

    print(f"\nMessages sent to Brian: {len(channel.messages_to('+254722000111'))}")
    print(channel.messages_to("+254722000111")[-1])
    app.dependency_overrides.clear()


if __name__ == "__main__":
    main()
