from __future__ import annotations


class FiscalError(Exception):
    """Base class for every failure the fiscalization workflow records on an invoice."""

    def __init__(self, message: str, raw_response: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.raw_response = raw_response


class ConfigurationError(FiscalError):
    """Missing or unusable certificate, password or API credentials."""


class EligibilityError(FiscalError):
    """The invoice may not be submitted right now."""


class AlreadyFiscalizedError(EligibilityError):
    """The invoice already carries a fiscalized outcome."""


class SubmissionInProgressError(EligibilityError):
    """Another attempt currently holds the invoice."""


class InvoiceNotFoundError(EligibilityError):
    pass


class TransportError(FiscalError):
    """Timeout, TLS/DNS failure or a non-2xx HTTP status."""

    def __init__(
        self,
        message: str,
        raw_response: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, raw_response)
        self.status_code = status_code


class ProtocolError(FiscalError):
    """The authority answered, but with a fault, an error list or an unreadable body."""

    def __init__(
        self,
        message: str,
        raw_response: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, raw_response)
        self.code = code


class ValidationError(FiscalError):
    """Invoice data cannot be submitted without correction."""
