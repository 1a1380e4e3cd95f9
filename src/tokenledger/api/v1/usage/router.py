"""Token usage reporting endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from tokenledger.api.deps import get_token_usage_service
from tokenledger.schemas.token_usage import OrganizationUsageSummaryResponse
from tokenledger.services.token_usage_service import TokenUsageService

router = APIRouter()


@router.get("/organizations/{organization_id}/summary")
async def get_organization_usage_summary(
    organization_id: str,
    start_date: str | None = Query(default=None, alias="startDate"),
    end_date: str | None = Query(default=None, alias="endDate"),
    service: TokenUsageService = Depends(get_token_usage_service),
) -> OrganizationUsageSummaryResponse:
    """Summarize the organization's token usage.

    Defaults to the last 24 hours; bounds that do not parse are ignored.
    """
    summary = await service.get_usage_summary_by_organization(
        organization_id, start_date=start_date, end_date=end_date
    )
    return OrganizationUsageSummaryResponse.model_validate(
        {"organization_id": organization_id, **summary}, from_attributes=True
    )
