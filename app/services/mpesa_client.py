"""M-Pesa Daraja client: OAuth token, STK push and STK push status query.

THE TWO-STEP PROTOCOL
----------------------
  1. GET /oauth/v1/generate?grant_type=client_credentials
     Authorization: Basic base64(consumer_key:consumer_secret)
     -> {"access_token": "...", "expires_in": "3599"}

  2. POST /mpesa/stkpush/v1/processrequest
     Authorization: Bearer <access_token>
     Password = base64(shortcode + passkey + timestamp)
     Timestamp = YYYYMMDDHHMMSS (the same value that went into Password)
     -> {"MerchantRequestID": "...", "CheckoutRequestID": "...",
         "ResponseCode": "0", ...}

A ResponseCode of "0" only means Safaricom accepted the request and sent
the PIN prompt to the payer's phone.  Whether the payer actually paid
arrives later on the callback URL (see app.services.mpesa_callback).

FAILURE SEMANTICS
------------------
``initiate_push`` and ``query_status`` never raise: transport errors,
timeouts and non-2xx responses come back as result values with an
``error`` string.  There are no retries here; the orchestrator owns the
retry policy (a retry is a new checkout with a new Payment row).
"""

from __future__ import annotations

import base64
import datetime
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.core.errors import AuthError, GatewayError
from app.core.metrics import GATEWAY_REQUESTS
from app.services import phone
from app.services.cache import CacheService

logger = logging.getLogger(__name__)

TRANSACTION_TYPE = "CustomerPayBillOnline"

_TOKEN_CACHE_KEY = "mpesa:token"
# Refresh this many seconds before Daraja says the token expires.
_TOKEN_SAFETY_MARGIN = 60


@dataclass(frozen=True, slots=True)
class PushResult:
    success: bool
    merchant_request_id: str | None = None
    checkout_request_id: str | None = None
    response_code: str | None = None
    response_description: str | None = None
    customer_message: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class StatusResult:
    success: bool
    result_code: int | None = None
    result_desc: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


def format_timestamp(moment: datetime.datetime) -> str:
    return moment.strftime("%Y%m%d%H%M%S")


def build_signature(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}".encode()
    return base64.b64encode(raw).decode("ascii")


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"{default} (HTTP {response.status_code})"
    if isinstance(data, dict):
        for key in ("errorMessage", "ResponseDescription", "ResultDesc"):
            if data.get(key):
                return str(data[key])
    return f"{default} (HTTP {response.status_code})"


def _coerce_code(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class MpesaClient:
    """Async Daraja client.  One instance per process; call ``aclose`` on shutdown."""

    def __init__(
        self,
        *,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        timeout: float = 30.0,
        token_cache: CacheService | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock=None,
    ) -> None:
        self._consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self._shortcode = shortcode
        self._passkey = passkey
        self._token_cache = token_cache
        self._clock = clock or (lambda: datetime.datetime.now(datetime.UTC))
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Step 1: OAuth
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str:
        """Fetch a bearer token.  Raises AuthError on any failure."""
        if self._token_cache is not None:
            cached = await self._token_cache.get(_TOKEN_CACHE_KEY)
            if cached:
                return cached

        credentials = base64.b64encode(
            f"{self._consumer_key}:{self._consumer_secret}".encode()
        ).decode("ascii")
        try:
            response = await self._http.get(
                "/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                headers={"Authorization": f"Basic {credentials}"},
            )
        except httpx.HTTPError as e:
            GATEWAY_REQUESTS.labels(operation="token", outcome="error").inc()
            raise AuthError(f"OAuth request failed: {e}") from e

        if not response.is_success:
            GATEWAY_REQUESTS.labels(operation="token", outcome="rejected").inc()
            raise AuthError(
                f"OAuth error: {_error_message(response, 'Failed to get access token')}"
            )

        try:
            data = response.json()
            token = data["access_token"]
        except (ValueError, KeyError, TypeError):
            GATEWAY_REQUESTS.labels(operation="token", outcome="rejected").inc()
            raise AuthError("OAuth response carried no access_token") from None

        GATEWAY_REQUESTS.labels(operation="token", outcome="ok").inc()

        if self._token_cache is not None:
            ttl = (_coerce_code(data.get("expires_in")) or 0) - _TOKEN_SAFETY_MARGIN
            if ttl > 0:
                await self._token_cache.set(_TOKEN_CACHE_KEY, token, ttl)
        return token

    def _password(self) -> tuple[str, str]:
        timestamp = format_timestamp(self._clock())
        return build_signature(self._shortcode, self._passkey, timestamp), timestamp

    # ------------------------------------------------------------------
    # Step 2: STK push
    # ------------------------------------------------------------------

    async def initiate_push(
        self,
        phone_number: str,
        amount: int,
        reference: str,
        description: str,
        callback_url: str,
    ) -> PushResult:
        msisdn = phone.to_msisdn(phone_number)
        try:
            token = await self.get_access_token()
            password, timestamp = self._password()
            payload = {
                "BusinessShortCode": self._shortcode,
                "Password": password,
                "Timestamp": timestamp,
                "TransactionType": TRANSACTION_TYPE,
                "Amount": amount,
                "PartyA": msisdn,
                "PartyB": self._shortcode,
                "PhoneNumber": msisdn,
                "CallBackURL": callback_url,
                "AccountReference": reference,
                "TransactionDesc": description,
            }
            response = await self._http.post(
                "/mpesa/stkpush/v1/processrequest",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except GatewayError as e:
            logger.warning("STK push aborted: %s", e)
            return PushResult(success=False, error=str(e))
        except httpx.HTTPError as e:
            GATEWAY_REQUESTS.labels(operation="push", outcome="error").inc()
            logger.warning("STK push transport error: %s", e)
            return PushResult(success=False, error=f"STK push request failed: {e}")

        if not response.is_success:
            GATEWAY_REQUESTS.labels(operation="push", outcome="rejected").inc()
            error = f"STK Push error: {_error_message(response, 'Unknown error')}"
            logger.warning("%s  phone=%s", error, phone.mask(phone_number))
            return PushResult(success=False, error=error)

        try:
            data = response.json()
        except ValueError:
            GATEWAY_REQUESTS.labels(operation="push", outcome="rejected").inc()
            return PushResult(success=False, error="STK Push error: invalid JSON")

        response_code = str(data.get("ResponseCode", ""))
        if response_code != "0" or not data.get("CheckoutRequestID"):
            GATEWAY_REQUESTS.labels(operation="push", outcome="rejected").inc()
            return PushResult(
                success=False,
                response_code=response_code or None,
                response_description=data.get("ResponseDescription"),
                error=f"STK Push error: {data.get('ResponseDescription') or 'not accepted'}",
            )

        GATEWAY_REQUESTS.labels(operation="push", outcome="ok").inc()
        logger.info(
            "STK push accepted  phone=%s amount=%s",
            phone.mask(phone_number),
            amount,
            extra={"checkout_request_id": data["CheckoutRequestID"]},
        )
        return PushResult(
            success=True,
            merchant_request_id=data.get("MerchantRequestID"),
            checkout_request_id=data["CheckoutRequestID"],
            response_code=response_code,
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )

    # ------------------------------------------------------------------
    # Status probe (fallback path only)
    # ------------------------------------------------------------------

    async def query_status(self, checkout_request_id: str) -> StatusResult:
        try:
            token = await self.get_access_token()
            password, timestamp = self._password()
            response = await self._http.post(
                "/mpesa/stkpushquery/v1/query",
                json={
                    "BusinessShortCode": self._shortcode,
                    "Password": password,
                    "Timestamp": timestamp,
                    "CheckoutRequestID": checkout_request_id,
                },
                headers={"Authorization": f"Bearer {token}"},
            )
        except GatewayError as e:
            return StatusResult(success=False, error=str(e))
        except httpx.HTTPError as e:
            GATEWAY_REQUESTS.labels(operation="query", outcome="error").inc()
            return StatusResult(success=False, error=f"STK query failed: {e}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        outcome = "ok" if response.is_success else "rejected"
        GATEWAY_REQUESTS.labels(operation="query", outcome=outcome).inc()
        return StatusResult(
            success=response.is_success,
            result_code=_coerce_code(data.get("ResultCode")),
            result_desc=data.get("ResultDesc") or data.get("errorMessage"),
            raw=data,
            error=None if response.is_success else _error_message(response, "Unknown error"),
        )
