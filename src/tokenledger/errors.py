"""Domain error hierarchy for metering, billing, and the credit ledger.

Each error carries the HTTP status the API layer reports for it, so routers
can translate any :class:`TokenLedgerError` without a lookup table.
"""

from __future__ import annotations

from typing import Any


class TokenLedgerError(Exception):
    """Base exception for all tokenledger domain errors."""

    status_code: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(TokenLedgerError):
    """Workspace membership, credential, or other referenced row is missing."""

    status_code = 404


class BadRequestError(TokenLedgerError):
    """Invalid input: amounts, date ranges, billing config, check-in rules."""

    status_code = 400


class PaymentRequiredError(TokenLedgerError):
    """Credit balance is below the minimum required to interact."""

    status_code = 402

    def __init__(self, credit: int, min_credit: int) -> None:
        self.credit = credit
        self.min_credit = min_credit
        super().__init__(
            f"Insufficient credit: balance={credit}, required={min_credit}",
            details={"credit": credit, "min_credit": min_credit},
        )


class InternalError(TokenLedgerError):
    """Unexpected persistence failure."""

    status_code = 500
