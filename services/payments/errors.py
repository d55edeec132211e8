# services/payments/errors.py
"""
Error taxonomy for fee collection and settlement.

Controllers map these onto HTTP status codes; nothing here knows about Flask.
"""

from __future__ import annotations


class PaymentError(Exception):
    status = 500
    reason = "payment_error"

    def __init__(self, message: str = "", *, reason: str | None = None):
        super().__init__(message or self.reason)
        if reason:
            self.reason = reason


class ConfigurationError(PaymentError):
    """Provider disabled or missing credentials. Never routed around."""
    status = 503
    reason = "provider_not_configured"


class ValidationError(PaymentError):
    status = 400
    reason = "invalid_request"


class ContestNotFound(ValidationError):
    status = 404
    reason = "contest_not_found"


class NotContestOwner(ValidationError):
    status = 403
    reason = "not_contest_owner"


class ContestNotPayable(ValidationError):
    status = 400
    reason = "contest_not_pending_payment"


class DuplicateActivePayment(ValidationError):
    status = 409
    reason = "payment_already_exists"


class InvalidTransition(ValidationError):
    status = 409
    reason = "invalid_transition"


class ProviderCommunicationError(PaymentError):
    """Network failure or non-2xx from a provider. Nothing local was mutated."""
    status = 502
    reason = "provider_unavailable"


class SignatureVerificationError(PaymentError):
    status = 401
    reason = "invalid_signature"


class InconsistencyWarning(UserWarning):
    """Contest not in the expected status while settling; logged, never raised."""
