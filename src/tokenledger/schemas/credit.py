"""Pydantic v2 schemas for the workspace credit API.

Amounts are validated by the credit service, not here, so an invalid amount
is reported as a domain error (400) rather than a schema error.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from tokenledger.schemas.pagination import PaginationMeta


class CreditSummaryResponse(BaseModel):
    """Current balance of one workspace member."""

    workspace_id: str
    user_id: str
    credit: int


class CreditTransactionResponse(BaseModel):
    """One ledger row. ``amount`` is signed; ``balance`` is the balance after it."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    user_id: str
    type: str
    amount: int
    balance: int
    credential_id: str | None = None
    credential_name: str | None = None
    description: str | None = None
    created_at: datetime


class CreditTransactionListResponse(BaseModel):
    data: list[CreditTransactionResponse]
    meta: PaginationMeta


class TopupRequest(BaseModel):
    """Request body for a manual top-up."""

    amount: int
    description: str | None = None


class AdjustRequest(BaseModel):
    """Request body for a signed administrative adjustment."""

    amount: int
    description: str | None = None


class CheckInResponse(BaseModel):
    reward: int
    credit: int
    next_available_at: datetime
    transaction: CreditTransactionResponse


class PreflightResponse(BaseModel):
    """Result of the pre-invocation credit gate.

    ``credit`` is None when the gate is disabled.
    """

    allowed: bool = True
    credit: int | None = None
    min_credit: int
