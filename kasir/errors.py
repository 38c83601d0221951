# Overview: Typed errors raised by the ledger core and rendered by the API layer.

"""
Ledger error taxonomy.

Every rejected precondition in the core raises one of these. Routes render
them as JSON using `http_status`; nothing here is swallowed by the services.
Only ConcurrencyConflict is meant to be retried by the caller.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all domain errors."""

    http_status = 400
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class ValidationError(LedgerError, ValueError):
    """400-level input problem."""

    http_status = 400


class NotFound(LedgerError):
    http_status = 404


class InvalidState(LedgerError):
    """Operation not permitted in the entity's current status."""

    http_status = 409


class ReturnWindowExpired(InvalidState):
    pass


class InsufficientStock(LedgerError):
    http_status = 409


class InsufficientPayment(LedgerError):
    http_status = 400


class ExcessiveReturnQuantity(LedgerError):
    http_status = 409


class DrawerAlreadyOpen(LedgerError):
    http_status = 409


class DrawerNotFound(NotFound):
    pass


class DuplicateSync(LedgerError):
    """
    A sale already has its cash ledger entry.

    Idempotent no-op: callers catch it and return `existing`. When it does
    reach a response it renders as success, carrying the existing entry
    instead of an error message.
    """

    http_status = 200

    def __init__(self, message: str, existing=None, details: dict | None = None):
        super().__init__(message, details)
        self.existing = existing

    def to_dict(self) -> dict:
        return {
            "transaction": self.existing.to_dict() if self.existing is not None else None,
            "duplicate": True,
            "code": self.code,
            "details": self.details,
        }


class ConcurrencyConflict(LedgerError):
    http_status = 409
    retryable = True
