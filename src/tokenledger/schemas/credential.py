"""Pydantic v2 schemas for credential billing configuration."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class UpdateMultiplierRequest(BaseModel):
    """Request body for setting the flat credit consumption multiplier."""

    multiplier: float


class UpdateModelMultipliersRequest(BaseModel):
    """Request body replacing the per-model billing map.

    Values are either ``{"multiplier": m, "rmbPerMTok": p}`` objects or bare
    legacy multipliers. ``null`` or ``{}`` clears the map.
    """

    multipliers_by_model: dict[str, Any] | None = Field(
        default=None,
        description="e.g. {'gpt-4o': {'multiplier': 1.5, 'rmbPerMTok': 20}}",
    )


class CredentialBillingResponse(BaseModel):
    """Billing view of a credential; multiplier fields are owner-only."""

    id: str
    workspace_id: str
    name: str
    credential_name: str
    credit_consumption_multiplier: float | None = None
    credit_consumption_multiplier_by_model: dict[str, dict[str, float]] | None = None
