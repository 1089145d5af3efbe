"""FastAPI dependency injection for settings, sessions, and the request context."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from ardine_core.auth.context import RequestContext
from ardine_core.state.database import get_engine
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ardine_api.config import APISettings, load_api_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield one ``AsyncSession`` per request.

    The session commits on clean exit and rolls back on exception, so an
    operation rejected part-way leaves no partial writes behind.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Request context (identity populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


async def get_request_context(request: Request, session: SessionDep) -> RequestContext:
    """Build the per-request authorization context.

    Resolves the caller's team role from storage on every request; role
    changes are therefore visible immediately.
    """
    return await RequestContext.build(
        session,
        user_id=getattr(request.state, "user_id", None),
        team_id=getattr(request.state, "team_id", None),
        instance_role=getattr(request.state, "instance_role", None),
    )


ContextDep = Annotated[RequestContext, Depends(get_request_context)]
