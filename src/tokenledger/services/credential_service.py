"""Credential billing configuration service layer.

Manages the owner-only billing fields of a credential: the flat credit
consumption multiplier and the per-model billing map. Values are validated
here, when written, so consumption never has to reject a stored config.
Encrypted credential data and general credential CRUD live elsewhere.
"""

from __future__ import annotations

import json
import logging
import math
import uuid
from collections.abc import Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.errors import BadRequestError, NotFoundError
from tokenledger.models.credential import Credential
from tokenledger.services.billing import parse_model_billing_config, validate_model_billing_config

logger = logging.getLogger(__name__)

def validate_multiplier(multiplier: Any) -> float:
    """Return ``multiplier`` as a float, rejecting non-finite or non-positive values."""
    if isinstance(multiplier, bool) or not isinstance(multiplier, (int, float)):
        raise BadRequestError("Invalid credit consumption multiplier")
    if not math.isfinite(multiplier) or multiplier <= 0:
        raise BadRequestError("Invalid credit consumption multiplier")
    return float(multiplier)


def _serialize_model_config(config: Mapping[str, Any] | None) -> str | None:
    normalized = validate_model_billing_config(config)
    if not normalized:
        return None
    return json.dumps(normalized, sort_keys=True)


def credential_billing_view(credential: Credential, is_owner: bool) -> dict:
    """Billing attributes of a credential as shown to the caller.

    Non-owners never see the multiplier fields.
    """
    view: dict[str, Any] = {
        "id": str(credential.id),
        "workspace_id": str(credential.workspace_id),
        "name": credential.name,
        "credential_name": credential.credential_name,
    }
    if is_owner:
        view["credit_consumption_multiplier"] = credential.credit_consumption_multiplier
        view["credit_consumption_multiplier_by_model"] = {
            model: entry.to_dict()
            for model, entry in parse_model_billing_config(
                credential.credit_consumption_multiplier_by_model
            ).items()
        }
    return view


class CredentialService:
    """Service for reading and updating credential billing configuration.

    Args:
        db: Async SQLAlchemy session for database operations.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create_credential(
        self,
        workspace_id: str,
        name: str,
        credential_name: str,
        credit_consumption_multiplier: float | None = None,
        model_multipliers: Mapping[str, Any] | None = None,
    ) -> Credential:
        """Create a credential row carrying validated billing configuration.

        Raises:
            BadRequestError: If the multiplier or per-model map is invalid.
        """
        multiplier = 1.0
        if credit_consumption_multiplier is not None:
            multiplier = validate_multiplier(credit_consumption_multiplier)

        credential = Credential(
            workspace_id=workspace_id,
            name=name,
            credential_name=credential_name,
            credit_consumption_multiplier=multiplier,
            credit_consumption_multiplier_by_model=_serialize_model_config(model_multipliers),
        )
        self.db.add(credential)
        await self.db.commit()
        await self.db.refresh(credential)
        return credential

    async def get_credential(
        self, credential_id: str, workspace_id: str | None = None
    ) -> Credential:
        """Get a credential by UUID, optionally scoped to a workspace.

        Raises:
            NotFoundError: If no such credential exists.
        """
        try:
            uuid.UUID(str(credential_id))
        except ValueError as exc:
            raise NotFoundError(f"Credential {credential_id} not found") from exc

        query = select(Credential).where(Credential.id == credential_id)
        if workspace_id is not None:
            query = query.where(Credential.workspace_id == workspace_id)
        result = await self.db.execute(query)
        credential = result.scalar_one_or_none()
        if credential is None:
            raise NotFoundError(f"Credential {credential_id} not found")
        return credential

    async def update_multiplier(
        self,
        credential_id: str,
        multiplier: Any,
        workspace_id: str | None = None,
    ) -> Credential:
        """Set the flat credit consumption multiplier.

        Raises:
            BadRequestError: If ``multiplier`` is not a finite number > 0.
            NotFoundError: If the credential does not exist.
        """
        value = validate_multiplier(multiplier)
        credential = await self.get_credential(credential_id, workspace_id)
        credential.credit_consumption_multiplier = value
        await self.db.commit()
        await self.db.refresh(credential)
        logger.info("Credential %s multiplier set to %s", credential_id, value)
        return credential

    async def update_model_multipliers(
        self,
        credential_id: str,
        config: Mapping[str, Any] | None,
        workspace_id: str | None = None,
    ) -> Credential:
        """Replace the per-model billing map; ``None`` or ``{}`` clears it.

        Raises:
            BadRequestError: If any entry is invalid or model names collide.
            NotFoundError: If the credential does not exist.
        """
        serialized = _serialize_model_config(config)
        credential = await self.get_credential(credential_id, workspace_id)
        credential.credit_consumption_multiplier_by_model = serialized
        await self.db.commit()
        await self.db.refresh(credential)
        logger.info(
            "Credential %s per-model billing updated (%d models)",
            credential_id,
            len(config or {}),
        )
        return credential
