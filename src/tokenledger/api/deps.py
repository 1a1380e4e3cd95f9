"""Shared FastAPI dependencies for database sessions, settings, and services."""

from collections.abc import AsyncGenerator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.config import Settings, get_settings
from tokenledger.services.credential_service import CredentialService
from tokenledger.services.credit_service import CreditService
from tokenledger.services.token_usage_service import TokenUsageService

OWNER_ROLE = "owner"


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session from the app-level session factory.

    The session factory is stored on ``request.app.state.session_factory``
    by the application lifespan. The session auto-closes when the request ends.
    """
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


async def get_credit_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> CreditService:
    """Provide a CreditService instance with the current DB session."""
    return CreditService(db, settings)


async def get_credential_service(
    db: AsyncSession = Depends(get_db),
) -> CredentialService:
    """Provide a CredentialService instance with the current DB session."""
    return CredentialService(db)


async def get_token_usage_service(
    credit_service: CreditService = Depends(get_credit_service),
) -> TokenUsageService:
    """Provide a TokenUsageService sharing the request's session and ledger."""
    return TokenUsageService(credit_service.db, credit_service.settings, credit_service)


async def get_caller_is_owner(
    x_workspace_role: str | None = Header(default=None),
) -> bool:
    """Whether the caller acts as workspace owner.

    Authentication happens upstream; the gateway forwards the caller's
    workspace role in the ``X-Workspace-Role`` header.
    """
    return (x_workspace_role or "").strip().lower() == OWNER_ROLE
