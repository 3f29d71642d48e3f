from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from starlette.requests import ClientDisconnect

from pnp.apps.hooks.deps import get_publisher, require_snow_token
from pnp.apps.hooks.response import AcceptedResponse
from pnp.core.errors import InputMalformedError
from pnp.services.bus.connector import SealedPublisher
from pnp.services.hooks.ingest import HOOK_ROUTES, HookRoute, publish_hook_payload

router = APIRouter(tags=["hooks"])


async def _read_body(request: Request) -> bytes:
    try:
        return await request.body()
    except ClientDisconnect as exc:
        raise InputMalformedError("unable to read request body") from exc


def _make_endpoint(route: HookRoute):
    async def endpoint(
        request: Request,
        publisher: SealedPublisher = Depends(get_publisher),
    ) -> AcceptedResponse:
        body = await _read_body(request)
        await publish_hook_payload(publisher, route, body)
        return AcceptedResponse(accepted=True, topic=route.topic)

    endpoint.__name__ = f"hook_{route.source}_{route.kind}"
    return endpoint


for _route in HOOK_ROUTES:
    # Only ServiceNow paths carry the shared bearer secret.
    _dependencies = [Depends(require_snow_token)] if _route.requires_token else []
    router.add_api_route(
        _route.path,
        _make_endpoint(_route),
        methods=["POST"],
        response_model=AcceptedResponse,
        dependencies=_dependencies,
    )
