from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

import uvicorn
from fastapi import FastAPI


logger = logging.getLogger(__name__)


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    # SIGINT and SIGTERM both begin a graceful drain.
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)


def build_server(app: FastAPI, *, port: int) -> uvicorn.Server:
    config = uvicorn.Config(app, host="0.0.0.0", port=port, log_config=None, lifespan="on")
    return uvicorn.Server(config)


async def drain(tasks: list[asyncio.Task], *, grace_s: float) -> None:
    """Give in-flight tasks up to ``grace_s`` to finish, then cancel the rest."""
    if not tasks:
        return
    _done, pending = await asyncio.wait(tasks, timeout=grace_s)
    for task in pending:
        task.cancel()
    if pending:
        logger.warning("cancelled %d tasks still running after %ss grace period", len(pending), grace_s)
        await asyncio.gather(*pending, return_exceptions=True)
