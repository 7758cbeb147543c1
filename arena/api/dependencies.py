"""FastAPI dependencies for dependency injection"""

from typing import Annotated, AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from .run_manager import ArenaRuntime, RunManager


def get_runtime(request: Request) -> ArenaRuntime:
    """Runtime wired up by the application lifespan"""
    return request.app.state.runtime


def get_run_manager(runtime: Annotated[ArenaRuntime, Depends(get_runtime)]) -> RunManager:
    return runtime.runs


async def get_db(
    runtime: Annotated[ArenaRuntime, Depends(get_runtime)],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a database session from the runtime's factory.

    Usage:
        @router.get("/runs")
        async def list_runs(db: DbSessionDep):
            ...
    """
    async with runtime.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# Type aliases for cleaner dependency injection
SettingsDep = Annotated[Settings, Depends(get_settings)]
RuntimeDep = Annotated[ArenaRuntime, Depends(get_runtime)]
RunManagerDep = Annotated[RunManager, Depends(get_run_manager)]
DbSessionDep = Annotated[AsyncSession, Depends(get_db)]
