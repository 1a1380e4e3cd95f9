"""Workspace member credit endpoints.

Balance, ledger history, manual top-up and adjustment, and the daily
check-in reward. All balance changes go through :class:`CreditService`,
which appends a ledger row for each of them.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from tokenledger.api.deps import get_credit_service
from tokenledger.api.errors import http_error
from tokenledger.errors import TokenLedgerError
from tokenledger.schemas.credit import (
    AdjustRequest,
    CheckInResponse,
    CreditSummaryResponse,
    CreditTransactionListResponse,
    CreditTransactionResponse,
    TopupRequest,
)
from tokenledger.services.credit_service import CreditService

router = APIRouter()


@router.get("/{workspace_id}/users/{user_id}/credit")
async def get_credit_summary(
    workspace_id: str,
    user_id: str,
    service: CreditService = Depends(get_credit_service),
) -> CreditSummaryResponse:
    """Return the member's current credit balance."""
    try:
        summary = await service.get_summary(workspace_id, user_id)
    except TokenLedgerError as exc:
        raise http_error(exc) from exc
    return CreditSummaryResponse(**summary)


@router.get("/{workspace_id}/users/{user_id}/credit/transactions")
async def list_credit_transactions(
    workspace_id: str,
    user_id: str,
    page: int = Query(default=1),
    page_size: int = Query(default=20, alias="pageSize"),
    start_date: str | None = Query(default=None, alias="startDate"),
    end_date: str | None = Query(default=None, alias="endDate"),
    service: CreditService = Depends(get_credit_service),
) -> CreditTransactionListResponse:
    """List the member's ledger rows, newest first.

    ``startDate``/``endDate`` accept ISO dates or datetimes; a bare
    ``endDate`` date includes that whole day.
    """
    try:
        transactions, meta = await service.get_transactions(
            workspace_id,
            user_id,
            page=page,
            page_size=page_size,
            start_date=start_date,
            end_date=end_date,
        )
    except TokenLedgerError as exc:
        raise http_error(exc) from exc
    return CreditTransactionListResponse(
        data=[CreditTransactionResponse.model_validate(t) for t in transactions],
        meta=meta,
    )


@router.post("/{workspace_id}/users/{user_id}/credit/topup", status_code=201)
async def topup_credit(
    workspace_id: str,
    user_id: str,
    body: TopupRequest,
    service: CreditService = Depends(get_credit_service),
) -> CreditTransactionResponse:
    """Add credits to the member's balance."""
    try:
        transaction = await service.topup(
            workspace_id, user_id, body.amount, description=body.description
        )
    except TokenLedgerError as exc:
        raise http_error(exc) from exc
    return CreditTransactionResponse.model_validate(transaction)


@router.post("/{workspace_id}/users/{user_id}/credit/adjust", status_code=201)
async def adjust_credit(
    workspace_id: str,
    user_id: str,
    body: AdjustRequest,
    service: CreditService = Depends(get_credit_service),
) -> CreditTransactionResponse:
    """Apply a signed correction to the member's balance."""
    try:
        transaction = await service.adjust(
            workspace_id, user_id, body.amount, description=body.description
        )
    except TokenLedgerError as exc:
        raise http_error(exc) from exc
    return CreditTransactionResponse.model_validate(transaction)


@router.post("/{workspace_id}/users/{user_id}/credit/checkin")
async def daily_check_in(
    workspace_id: str,
    user_id: str,
    service: CreditService = Depends(get_credit_service),
) -> CheckInResponse:
    """Claim the daily check-in reward."""
    try:
        result = await service.daily_check_in(workspace_id, user_id)
    except TokenLedgerError as exc:
        raise http_error(exc) from exc
    return CheckInResponse(
        reward=result.reward,
        credit=result.credit,
        next_available_at=result.next_available_at,
        transaction=CreditTransactionResponse.model_validate(result.transaction),
    )
