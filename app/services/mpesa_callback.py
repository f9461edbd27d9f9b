"""Parsing of the asynchronous STK push result callback.

Envelope shape::

    {"Body": {"stkCallback": {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_191220191020363925",
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
        "CallbackMetadata": {"Item": [
            {"Name": "Amount", "Value": 1.00},
            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254708374149}]}}}}

Failed or cancelled payments carry a non-zero ResultCode and no metadata.
Metadata items are looked up by name; an absent item yields None.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import CallbackParseError


class _MetadataItem(BaseModel):
    name: str = Field(alias="Name")
    value: Any = Field(default=None, alias="Value")


class _CallbackMetadata(BaseModel):
    items: list[_MetadataItem] = Field(default_factory=list, alias="Item")


class _StkCallback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    merchant_request_id: str | None = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID", min_length=1)
    result_code: int = Field(alias="ResultCode")
    result_desc: str | None = Field(default=None, alias="ResultDesc")
    metadata: _CallbackMetadata | None = Field(default=None, alias="CallbackMetadata")


class _Body(BaseModel):
    stk_callback: _StkCallback = Field(alias="stkCallback")


class _Envelope(BaseModel):
    body: _Body = Field(alias="Body")


@dataclass(frozen=True, slots=True)
class CallbackResult:
    merchant_request_id: str | None
    checkout_request_id: str
    result_code: int
    result_desc: str | None
    amount: float | None = None
    receipt_number: str | None = None
    transaction_date: str | None = None
    phone_number: str | None = None

    @property
    def success(self) -> bool:
        return self.result_code == 0


def parse_callback(payload: Any) -> CallbackResult:
    """Validate the envelope.  Raises CallbackParseError on a malformed payload."""
    try:
        envelope = _Envelope.model_validate(payload)
    except PydanticValidationError as e:
        raise CallbackParseError(f"malformed STK callback: {e.error_count()} error(s)") from e

    cb = envelope.body.stk_callback
    values = {item.name: item.value for item in (cb.metadata.items if cb.metadata else [])}

    amount = values.get("Amount")
    receipt = values.get("MpesaReceiptNumber")
    tx_date = values.get("TransactionDate")
    phone_number = values.get("PhoneNumber")
    return CallbackResult(
        merchant_request_id=cb.merchant_request_id,
        checkout_request_id=cb.checkout_request_id,
        result_code=cb.result_code,
        result_desc=cb.result_desc,
        amount=float(amount) if isinstance(amount, (int, float)) else None,
        receipt_number=str(receipt) if receipt is not None else None,
        transaction_date=str(tx_date) if tx_date is not None else None,
        phone_number=str(phone_number) if phone_number is not None else None,
    )
