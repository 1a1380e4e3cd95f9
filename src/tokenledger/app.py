"""FastAPI application factory with async lifespan for the database engine."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tokenledger.api.v1.router import v1_router
from tokenledger.config import get_settings
from tokenledger.database import close_db, get_session_factory, init_db


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    On startup: initialize the database engine and session factory.
    On shutdown: dispose of the engine.
    """
    settings = get_settings()

    engine = await init_db(settings.database_url)
    app.state.db_engine = engine
    app.state.session_factory = get_session_factory(engine)

    yield

    await close_db(engine)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    This is the app factory. Uvicorn calls it with the --factory flag:
        uvicorn tokenledger.app:create_app --factory
    """
    settings = get_settings()
    logging.getLogger("tokenledger").setLevel(settings.log_level.upper())

    app = FastAPI(
        title="Token Ledger",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
    )

    app.include_router(v1_router, prefix=settings.api_prefix)

    return app
