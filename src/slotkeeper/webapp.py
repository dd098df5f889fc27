import asyncio
import json
from pathlib import Path

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse

from slotkeeper.reconciler import Reconciler
from slotkeeper.store import read_config, utc_now_iso, validate_slots_document


def create_app(reconciler: Reconciler, config_path: Path) -> FastAPI:
    app = FastAPI(title="slotkeeper status")

    # Handlers are async so they read reconciler state on the loop that owns it.
    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse(
            {
                "status": "healthy",
                "listeners": len(reconciler.managed_ports),
                "timestamp": utc_now_iso(),
            }
        )

    @app.get("/api/status")
    async def status() -> JSONResponse:
        snapshot = reconciler.snapshot()
        payload = {
            "config_path": str(config_path),
            "listeners": snapshot["listeners"],
            "last_tick": snapshot["last_tick"],
            "tick_count": snapshot["tick_count"],
        }
        return JSONResponse(payload)

    @app.get("/api/history")
    async def history() -> JSONResponse:
        return JSONResponse({"items": reconciler.history()})

    @app.get("/api/config")
    async def config() -> JSONResponse:
        try:
            cfg = await asyncio.to_thread(read_config, config_path)
        except FileNotFoundError as exc:
            return JSONResponse({"ok": False, "error": str(exc)}, status_code=404)
        except ValueError as exc:
            return JSONResponse({"ok": False, "error": str(exc)}, status_code=500)
        return JSONResponse(cfg)

    @app.post("/api/validate")
    async def validate(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except json.JSONDecodeError as exc:
            return JSONResponse({"ok": False, "errors": [str(exc)]}, status_code=400)
        errors = validate_slots_document(body)
        return JSONResponse({"ok": not errors, "errors": errors})

    @app.post("/api/reconcile")
    async def reconcile(background_tasks: BackgroundTasks) -> JSONResponse:
        background_tasks.add_task(reconciler.trigger)
        return JSONResponse({"ok": True}, status_code=202)

    return app
