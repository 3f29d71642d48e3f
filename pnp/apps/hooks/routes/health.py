from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from pnp.apps.hooks.deps import get_health_monitor
from pnp.apps.hooks.response import HealthzInfo
from pnp.core.config import get_settings
from pnp.services.hooks.health import HookHealthMonitor

router = APIRouter(tags=["health"])


@router.get("/pnp/hooks/healthz", response_model=HealthzInfo)
async def hooks_healthz(
    request: Request,
    monitor: HookHealthMonitor = Depends(get_health_monitor),
) -> JSONResponse:
    # Requests only read the cached verdict; the background loop does the probing.
    code, description = await monitor.status()
    href = get_settings().hooks_public_url or str(request.url)
    payload = HealthzInfo(href=href, code=code, description=description)
    return JSONResponse(content=payload.model_dump(), status_code=200 if code == 0 else 503)
