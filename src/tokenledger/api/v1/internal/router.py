"""Internal API endpoints for the execution pipeline.

Called before a model invocation (credit pre-flight) and after an execution
finishes (usage recording). Not intended for external API consumers.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from tokenledger.api.deps import get_credit_service, get_token_usage_service
from tokenledger.api.errors import http_error
from tokenledger.errors import TokenLedgerError
from tokenledger.schemas.credit import PreflightResponse
from tokenledger.schemas.token_usage import RecordTokenUsageRequest, RecordTokenUsageResponse
from tokenledger.services.credit_service import CreditService
from tokenledger.services.token_usage_service import (
    CredentialAccess,
    RecordTokenUsageInput,
    TokenUsageService,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/token-usage")
async def record_token_usage(
    body: RecordTokenUsageRequest,
    service: TokenUsageService = Depends(get_token_usage_service),
) -> RecordTokenUsageResponse:
    """Record and bill the token usage of one finished execution.

    Payloads without usable usage are acknowledged with ``recorded=false``
    and a ``skipped_reason``.
    """
    data = RecordTokenUsageInput(
        workspace_id=body.workspace_id,
        organization_id=body.organization_id,
        user_id=body.user_id,
        flow_type=body.flow_type,
        flow_id=body.flow_id,
        execution_id=body.execution_id,
        chat_id=body.chat_id,
        chat_message_id=body.chat_message_id,
        session_id=body.session_id,
        usage_payloads=body.usage_payloads,
        credential_accesses=[
            CredentialAccess(
                credential_id=access.credential_id,
                credential_name=access.credential_name,
                model=access.model,
            )
            for access in body.credential_accesses
        ],
    )
    try:
        result = await service.record_token_usage(data)
    except TokenLedgerError as exc:
        logger.warning(
            "Token usage recording failed flow_id=%s chat_id=%s: %s",
            body.flow_id,
            body.chat_id,
            exc.message,
        )
        raise http_error(exc) from exc

    if result.execution is None:
        return RecordTokenUsageResponse(recorded=False, skipped_reason=result.skipped_reason)

    return RecordTokenUsageResponse(
        recorded=True,
        execution_id=str(result.execution.id),
        credential_record_ids=[str(record.id) for record in result.credential_records],
        credit_consumed=result.consumption.credit_consumed if result.consumption else 0,
        credit=result.consumption.credit if result.consumption else None,
    )


@router.post("/workspaces/{workspace_id}/users/{user_id}/credit/preflight")
async def credit_preflight(
    workspace_id: str,
    user_id: str,
    service: CreditService = Depends(get_credit_service),
) -> PreflightResponse:
    """Reject the invocation with 402 when the member's balance is too low."""
    try:
        credit = await service.assert_sufficient_credit(workspace_id, user_id)
    except TokenLedgerError as exc:
        raise http_error(exc) from exc
    return PreflightResponse(
        allowed=True, credit=credit, min_credit=service.settings.min_credit_to_interact
    )
