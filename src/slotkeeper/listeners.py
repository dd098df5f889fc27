import asyncio
import contextlib
import logging
import os
import socket
import stat
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import anyio
import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException
from starlette.middleware.gzip import GZipMiddleware
from starlette.responses import RedirectResponse, Response
from starlette.staticfiles import StaticFiles
from starlette.types import Scope

from slotkeeper.slots import MODE_STATIC, SlotEntry, is_directory

CACHEABLE_SUFFIXES = frozenset(
    {
        ".js",
        ".mjs",
        ".css",
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".svg",
        ".webp",
        ".ico",
        ".woff",
        ".woff2",
        ".ttf",
        ".map",
    }
)
LONG_CACHE = "public, max-age=3600, immutable"
NO_CACHE = "no-cache"
GZIP_MIN_SIZE = 1024
LISTEN_BACKLOG = 2048
STARTUP_POLL_SECONDS = 0.01


def cache_control_for(path: str) -> str:
    suffix = os.path.splitext(path)[1].lower()
    return LONG_CACHE if suffix in CACHEABLE_SUFFIXES else NO_CACHE


def health_payload(entry: SlotEntry) -> dict[str, Any]:
    return {
        "status": "healthy",
        "slot": entry.slot,
        "port": entry.port,
        "type": entry.mode,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class SlotFiles(StaticFiles):
    """StaticFiles with index fallback and an optional cache-control policy.

    The directory may be missing or appear later: requests then 404 instead of
    failing the app the way an unchecked StaticFiles directory would.
    """

    def __init__(
        self,
        directory: Path | None,
        *,
        fallback_to_index: bool,
        cache_policy: bool,
        missing_index_message: str | None = None,
    ) -> None:
        super().__init__(
            directory=str(directory) if directory else None, html=True, check_dir=False
        )
        self.config_checked = True
        self.fallback_to_index = fallback_to_index
        self.cache_policy = cache_policy
        self.missing_index_message = missing_index_message

    async def get_response(self, path: str, scope: Scope) -> Response:
        served = path
        response: Response | None
        miss: HTTPException | None = None
        try:
            response = await super().get_response(path, scope)
        except HTTPException as exc:
            if exc.status_code != 404:
                raise
            response, miss = None, exc
        if isinstance(response, RedirectResponse):
            # Directory URLs without a trailing slash are a miss, never a redirect.
            response, miss = None, HTTPException(status_code=404)

        if response is None or response.status_code == 404:
            if self.fallback_to_index:
                response = await self._index_response(scope, miss, default=response)
                served = "index.html"
            elif response is None:
                raise miss

        if self.cache_policy:
            response.headers["Cache-Control"] = cache_control_for(served)
        return response

    async def _index_response(
        self,
        scope: Scope,
        exc: HTTPException | None,
        default: Response | None = None,
    ) -> Response:
        if self.directory is not None:
            index_path = os.path.join(self.directory, "index.html")
            try:
                stat_result = await anyio.to_thread.run_sync(os.stat, index_path)
            except OSError:
                stat_result = None
            if stat_result is not None and stat.S_ISREG(stat_result.st_mode):
                return self.file_response(index_path, stat_result, scope)

        if self.missing_index_message is not None:
            return PlainTextResponse(self.missing_index_message, status_code=404)
        if default is not None:
            return default
        raise exc or HTTPException(status_code=404)


class ListenerFactory:
    def __init__(self, placeholder_dir: Path) -> None:
        self.placeholder_dir = placeholder_dir

    def placeholder_assets(self, slot: str) -> Path:
        return self.placeholder_dir / slot

    def build(self, entry: SlotEntry) -> FastAPI:
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
        app.add_middleware(GZipMiddleware, minimum_size=GZIP_MIN_SIZE)

        @app.get("/health")
        def health() -> JSONResponse:
            return JSONResponse(health_payload(entry))

        if entry.mode == MODE_STATIC:
            root = entry.static_root
            if root is None or not is_directory(root):
                logging.warning(
                    "[%s] Static root missing for port %s: %s", entry.slot, entry.port, root
                )
            files = SlotFiles(root, fallback_to_index=entry.spa, cache_policy=True)
        else:
            assets = self.placeholder_assets(entry.slot)
            files = SlotFiles(
                assets,
                fallback_to_index=True,
                cache_policy=False,
                missing_index_message=(
                    f'Placeholder assets not found for slot "{entry.slot}" at {assets}'
                ),
            )
        app.mount("/", files, name="site")
        return app


class SlotServer(uvicorn.Server):
    # Many servers share one loop; signals belong to the daemon, not to each server.
    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


@dataclass
class RunningListener:
    port: int
    server: uvicorn.Server
    task: "asyncio.Task[None]"


def bind_socket(host: str, port: int, backlog: int = LISTEN_BACKLOG) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(backlog)
    except OSError:
        sock.close()
        raise
    return sock


class UvicornListenerHost:
    """Runs one uvicorn server per port on the current event loop."""

    def __init__(self, host: str = "0.0.0.0", shutdown_timeout: float = 5.0) -> None:
        self.host = host
        self.shutdown_timeout = shutdown_timeout

    async def start(self, port: int, app: Any) -> RunningListener:
        sock = bind_socket(self.host, port)
        config = uvicorn.Config(
            app,
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=self.shutdown_timeout,
        )
        server = SlotServer(config)
        task = asyncio.create_task(server.serve(sockets=[sock]), name=f"listener-{port}")
        while not server.started:
            if task.done():
                sock.close()
                error = None if task.cancelled() else task.exception()
                raise OSError(f"listener on port {port} exited during startup") from error
            await asyncio.sleep(STARTUP_POLL_SECONDS)
        return RunningListener(port=port, server=server, task=task)

    async def stop(self, listener: RunningListener) -> None:
        listener.server.should_exit = True
        try:
            await listener.task
        except Exception:
            logging.exception("[port %s] Listener failed while closing", listener.port)
