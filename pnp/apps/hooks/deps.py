from __future__ import annotations

from fastapi import Request

from pnp.services.bus.connector import SealedPublisher
from pnp.services.hooks.auth import HookAuthenticator
from pnp.services.hooks.health import HookHealthMonitor


def get_publisher(request: Request) -> SealedPublisher:
    return request.app.state.publisher


def get_health_monitor(request: Request) -> HookHealthMonitor:
    return request.app.state.health_monitor


async def require_snow_token(request: Request) -> None:
    # ServiceNow paths carry a shared bearer secret; other sources are authenticated upstream.
    authenticator: HookAuthenticator = request.app.state.authenticator
    await authenticator.authenticate(request.headers.get("Authorization"))
