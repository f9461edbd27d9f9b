"""Error taxonomy for the subscription-and-delivery core.

Where each error surfaces:

  ValidationError     enrollment input rejected before any external call
                      (API: 422)
  GatewayError        M-Pesa auth or push rejected; the Payment is marked
                      failed (API: 502)
  CallbackParseError  malformed provider callback; nothing is mutated and
                      the provider gets a non-success ack so it redelivers
  LedgerError         persistence failure; propagated to the caller, the
                      scheduler counts it as a per-unit failure
  ChannelError        WhatsApp send failure; recorded as a failed
                      OutboundMessage, never fatal to the enclosing operation
"""

from __future__ import annotations


class SkillBoostError(Exception):
    """Base class for all domain errors raised by the core."""


class ValidationError(SkillBoostError, ValueError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class GatewayError(SkillBoostError):
    pass


class AuthError(GatewayError):
    """The provider refused the client-credentials token request."""


class CallbackParseError(SkillBoostError):
    pass


class LedgerError(SkillBoostError):
    pass


class ChannelError(SkillBoostError):
    pass
