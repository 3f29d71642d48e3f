from __future__ import annotations

import uvicorn

from pnp.core.config import get_settings
from pnp.core.logging import configure_logging


def main() -> None:
    # The hooks API owns its bus connection through the app lifespan.
    configure_logging()
    settings = get_settings()
    uvicorn.run("pnp.apps.hooks.main:app", host="0.0.0.0", port=settings.hooks_port, log_config=None)


if __name__ == "__main__":
    main()
