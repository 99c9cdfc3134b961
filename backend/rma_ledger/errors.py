# Overview: Domain error kinds raised by the return workflow and store credit ledger.

"""
Error kinds surfaced to callers.

- ValidationError: missing/invalid input, raised before any mutation
- InvalidTransitionError: operation not permitted from the entity's current status
- AlreadyResolvedError: second resolve/void on an entity that already settled
- NotFoundError: entity absent OR owned by another tenant (same message for both)
- InsufficientBalanceError: ledger application exceeds the remaining balance
- ExternalServiceError: disposal reporting failed; captured, never fails destroy
"""

from __future__ import annotations


class RmaLedgerError(Exception):
    """Base class for domain errors."""
    pass


class ValidationError(RmaLedgerError, ValueError):
    """400-level input problem."""
    pass


class InvalidTransitionError(RmaLedgerError):
    """Raised when an operation is attempted from a status that does not permit it."""

    def __init__(self, message: str, *, current_status: str | None = None, action: str | None = None):
        super().__init__(message)
        self.current_status = current_status
        self.action = action


class AlreadyResolvedError(InvalidTransitionError):
    """Idempotency guard: the entity was already resolved (or voided)."""
    pass


class NotFoundError(RmaLedgerError):
    """Referenced entity is absent or not owned by the calling tenant."""
    pass


class InsufficientBalanceError(RmaLedgerError):
    """Ledger application exceeds the remaining balance."""

    def __init__(self, requested_cents: int, available_cents: int):
        super().__init__(
            f"Cannot apply {requested_cents} cents. Only {available_cents} cents available."
        )
        self.requested_cents = requested_cents
        self.available_cents = available_cents


class ExternalServiceError(RmaLedgerError):
    """A remote collaborator (regulatory reporting) failed or was unreachable."""

    def __init__(self, message: str, *, service: str = "disposal_reporting", status_code: int | None = None):
        super().__init__(message)
        self.service = service
        self.status_code = status_code
