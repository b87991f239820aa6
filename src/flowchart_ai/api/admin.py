"""Admin API endpoints with simple token auth."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

if TYPE_CHECKING:
    from flowchart_ai.containers import AppContainer

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_admin_token(request: Request) -> str:
    container: AppContainer = request.app.state.container
    return container.settings.admin_token


async def require_admin(
    x_admin_token: str | None = Header(default=None),
    admin_token: str = Depends(_get_admin_token),
) -> None:
    """Ensure requests include a valid admin token."""
    if not x_admin_token or x_admin_token != admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)


@router.get("/stats", dependencies=[Depends(require_admin)])
async def admin_stats(request: Request) -> dict[str, object]:
    """Return session, retry and render statistics."""
    container: AppContainer = request.app.state.container
    return {
        "sessions": container.session_store.stats(),
        "errors": container.retry_executor.stats.as_dict(),
        "render": container.render_service.stats(),
    }


@router.post("/reset", dependencies=[Depends(require_admin)])
async def admin_reset(request: Request) -> dict[str, object]:
    """Reset every counter and clear the render cache."""
    container: AppContainer = request.app.state.container
    container.session_store.reset_stats()
    container.retry_executor.reset_stats()
    container.render_service.reset_stats()
    cleared = container.render_service.clear_cache()
    return {"status": "ok", **cleared}


@router.post("/sweep", dependencies=[Depends(require_admin)])
async def admin_sweep(request: Request) -> dict[str, int]:
    """Run the session sweep now instead of waiting for the next interval."""
    container: AppContainer = request.app.state.container
    return container.session_sweeper.run_once()
