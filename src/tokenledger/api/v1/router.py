"""V1 API router aggregating all sub-routers."""

from fastapi import APIRouter

from tokenledger.api.v1.credentials.router import router as credentials_router
from tokenledger.api.v1.credits.router import router as credits_router
from tokenledger.api.v1.internal.router import router as internal_router
from tokenledger.api.v1.system.router import router as system_router
from tokenledger.api.v1.usage.router import router as usage_router

v1_router = APIRouter()
v1_router.include_router(system_router, prefix="/system", tags=["system"])
v1_router.include_router(credits_router, prefix="/workspaces", tags=["credits"])
v1_router.include_router(credentials_router, prefix="/credentials", tags=["credentials"])
v1_router.include_router(usage_router, prefix="/usage", tags=["usage"])
v1_router.include_router(internal_router, prefix="/internal", tags=["internal"])
