from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI

logger = logging.getLogger("termrelay.ports.hook")


class ListenerServer:
    """uvicorn.Server bound to the caller's running event loop."""

    def __init__(self, app: FastAPI, *, host: str, port: int, log_level: str = "warning") -> None:
        self.host = host
        self.port = int(port)
        config = uvicorn.Config(app, host=host, port=self.port, log_level=log_level.lower(), access_log=False)
        self._server = uvicorn.Server(config)

    async def serve(self) -> None:
        logger.info(f"listener starting on {self.host}:{self.port}", extra={"op": "listener.start"})
        await self._server.serve()

    def stop(self) -> None:
        self._server.should_exit = True


async def serve_listener(app: FastAPI, host: str, port: int, *, log_level: str = "warning") -> None:
    await ListenerServer(app, host=host, port=port, log_level=log_level).serve()
