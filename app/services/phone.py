"""Kenyan mobile number normalization.

Every WhatsApp address and M-Pesa payer number passes through here before
it is stored or sent to a provider.  The canonical form is E.164-like:
``+254`` followed by the 9-digit national number.
"""

from __future__ import annotations

import re

COUNTRY_PREFIX = "254"

_NON_DIGITS = re.compile(r"\D")
_VALID_MOBILE = re.compile(rf"^\+{COUNTRY_PREFIX}7\d{{8}}$")


def normalize(raw: str) -> str:
    """Canonicalize a phone number to ``+254XXXXXXXXX``.

    Input that matches none of the known shapes is returned unchanged, so
    callers must still check :func:`is_valid`.
    """
    digits = _NON_DIGITS.sub("", raw)
    if digits.startswith(COUNTRY_PREFIX):
        return f"+{digits}"
    if digits.startswith("0"):
        return f"+{COUNTRY_PREFIX}{digits[1:]}"
    if len(digits) == 9:
        return f"+{COUNTRY_PREFIX}{digits}"
    return raw


def is_valid(raw: str) -> bool:
    return bool(_VALID_MOBILE.match(normalize(raw)))


def to_msisdn(raw: str) -> str:
    """Provider form used by Daraja and the WhatsApp API: digits only, no ``+``."""
    return normalize(raw).lstrip("+")


def mask(phone: str) -> str:
    """Log-safe rendering: keeps the prefix and the last three digits."""
    if len(phone) <= 7:
        return "***"
    return f"{phone[:4]}{'*' * (len(phone) - 7)}{phone[-3:]}"
