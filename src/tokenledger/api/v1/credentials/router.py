"""Credential billing configuration endpoints.

Only the owner-managed billing fields are exposed here. Writes require the
caller to act as workspace owner; reads hide the multipliers from everyone
else.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from tokenledger.api.deps import get_caller_is_owner, get_credential_service
from tokenledger.api.errors import http_error
from tokenledger.errors import TokenLedgerError
from tokenledger.schemas.credential import (
    CredentialBillingResponse,
    UpdateModelMultipliersRequest,
    UpdateMultiplierRequest,
)
from tokenledger.services.credential_service import CredentialService, credential_billing_view

router = APIRouter()


def _require_owner(is_owner: bool) -> None:
    if not is_owner:
        raise HTTPException(
            status_code=403, detail="Only the workspace owner can change credential billing"
        )


@router.get("/{credential_id}/billing", response_model_exclude_none=True)
async def get_credential_billing(
    credential_id: str,
    is_owner: bool = Depends(get_caller_is_owner),
    service: CredentialService = Depends(get_credential_service),
) -> CredentialBillingResponse:
    """Return the credential's billing view."""
    try:
        credential = await service.get_credential(credential_id)
    except TokenLedgerError as exc:
        raise http_error(exc) from exc
    return CredentialBillingResponse(**credential_billing_view(credential, is_owner))


@router.patch("/{credential_id}/multiplier", response_model_exclude_none=True)
async def update_credential_multiplier(
    credential_id: str,
    body: UpdateMultiplierRequest,
    is_owner: bool = Depends(get_caller_is_owner),
    service: CredentialService = Depends(get_credential_service),
) -> CredentialBillingResponse:
    """Set the flat credit consumption multiplier."""
    _require_owner(is_owner)
    try:
        credential = await service.update_multiplier(credential_id, body.multiplier)
    except TokenLedgerError as exc:
        raise http_error(exc) from exc
    return CredentialBillingResponse(**credential_billing_view(credential, True))


@router.put("/{credential_id}/model-multipliers", response_model_exclude_none=True)
async def replace_model_multipliers(
    credential_id: str,
    body: UpdateModelMultipliersRequest,
    is_owner: bool = Depends(get_caller_is_owner),
    service: CredentialService = Depends(get_credential_service),
) -> CredentialBillingResponse:
    """Replace the per-model billing map of the credential."""
    _require_owner(is_owner)
    try:
        credential = await service.update_model_multipliers(
            credential_id, body.multipliers_by_model
        )
    except TokenLedgerError as exc:
        raise http_error(exc) from exc
    return CredentialBillingResponse(**credential_billing_view(credential, True))
