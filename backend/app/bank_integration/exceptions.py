"""
Bank integration errors

Raised by providers and the import service; mapped to HTTP statuses by the routes.
"""

from typing import Optional


class BankIntegrationError(Exception):
    """Base class for bank integration failures."""
    pass


class BankProviderError(BankIntegrationError):
    """Raised when an aggregator API call fails (network error or non-2xx response)."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        if status_code is not None:
            message = f"{message}: {status_code} {body or ''}".rstrip()
        super().__init__(message)


class ProviderAuthError(BankProviderError):
    """Raised when the aggregator rejects our API credentials. Aborts the whole operation."""
    pass


class InstitutionNotFoundError(BankIntegrationError):
    """Raised when a bank descriptor cannot be resolved to an aggregator institution."""
    pass


class RequisitionNotLinkedError(BankIntegrationError):
    """Raised when the user has not (yet) completed the aggregator consent flow."""
    pass


class NoConnectedAccountsError(BankIntegrationError):
    """Raised when a family has no connected accounts for the requested provider."""
    pass


def with_prefix(error: Exception, prefix: str) -> Exception:
    """
    Build a copy of a domain error with a human-readable prefix.

    The error class (and HTTP status details for provider errors) is kept so
    callers can still dispatch on it.
    """
    message = f"{prefix}: {error}"
    if isinstance(error, BankProviderError):
        wrapped = type(error)(message)
        wrapped.status_code = error.status_code
        wrapped.body = error.body
        return wrapped
    return type(error)(message)
