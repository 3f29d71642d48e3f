from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from pnp.core.logging import configure_logging
from pnp.services.liveness import LivenessProbe


def create_app(*, probe: LivenessProbe | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="PnP Worker Liveness", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.probe = probe

    @app.get("/healthz")
    async def healthz(request: Request) -> PlainTextResponse:
        # Probe construction is deferred so importing the app never needs broker settings.
        if request.app.state.probe is None:
            request.app.state.probe = LivenessProbe.from_settings()
        result = await request.app.state.probe.check()
        if not result.ok:
            return PlainTextResponse(f"error: {result.detail}", status_code=500)
        return PlainTextResponse(result.detail)

    return app


app = create_app()
