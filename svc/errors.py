from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for failures surfaced by the payment reconciliation flow.

    ``status_code`` is the HTTP status the API layer renders for the error.
    """

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def code(self) -> str:
        return type(self).__name__


class ProviderUnavailable(ReconciliationError):
    """The payment provider call itself failed (network, auth, timeout)."""

    status_code = 502


class InvalidSession(ReconciliationError):
    """The checkout session does not exist or is not paid."""

    status_code = 400


class SessionNotFound(InvalidSession):
    pass


class MissingCorrelation(ReconciliationError):
    """The checkout session carries neither a client reference id nor an email."""

    status_code = 400


class SignatureInvalid(ReconciliationError):
    status_code = 400


class WebhookNotConfigured(ReconciliationError):
    status_code = 500


class InternalError(ReconciliationError):
    status_code = 500


class ActivationDowngradeRejected(ReconciliationError):
    status_code = 409


class MissingFields(ReconciliationError):
    status_code = 400
