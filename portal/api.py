"""REST API — FastAPI front for dispatching page scripts and engine admin."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from portal.db import EXTENSION_KINDS
from portal.dispatcher import RequestContext
from portal.errors import (
    ExtensionLoadError,
    PortalError,
    ScriptTimeoutError,
    UnitNotFoundError,
)

if TYPE_CHECKING:
    from portal.runtime import ScriptRuntime

log = logging.getLogger(__name__)

app = FastAPI(title="Portal Script Engine API", version="0.1.0")

# Runtime reference, set by start_api()
_runtime: ScriptRuntime | None = None


def get_runtime() -> ScriptRuntime:
    if _runtime is None:
        raise HTTPException(status_code=503, detail="Runtime not ready")
    return _runtime


# ── Admin endpoints ───────────────────────────────────────────────

@app.get("/api/stats")
async def api_stats() -> JSONResponse:
    """Registry sizes and pool counters."""
    rt = get_runtime()
    return JSONResponse({
        "primary_units": len(rt.primary),
        "extension_units": len(rt.extensions),
        "widgets": len(rt.widgets),
        "pool": rt.pool.stats(),
    })


@app.get("/api/widgets")
async def api_widgets() -> JSONResponse:
    """Active widget names, in order."""
    rt = get_runtime()
    return JSONResponse({"widgets": rt.widgets.names()})


@app.post("/api/extensions/{kind}/reload")
async def api_reload_extensions(kind: str) -> JSONResponse:
    """Re-resolve enabled extensions of one kind."""
    rt = get_runtime()
    if kind not in EXTENSION_KINDS:
        raise HTTPException(status_code=404, detail=f"Unknown extension kind: {kind}")
    try:
        reports = await rt.reload_extensions(kind)
    except ExtensionLoadError as e:
        log.error("Extension reload failed: %s", e)
        raise HTTPException(status_code=500, detail=str(e)) from e
    report = reports[0]
    return JSONResponse({
        "status": "ok",
        "kind": report.kind,
        "units": report.units,
        "loaded": report.loaded,
        "skipped": report.skipped,
        "failed_widgets": report.failed_widgets,
    })


# ── Page dispatch ─────────────────────────────────────────────────

async def _form_values(request: Request) -> dict[str, Any]:
    ctype = request.headers.get("content-type", "")
    if ctype.startswith("application/json"):
        body = await request.json()
        return body if isinstance(body, dict) else {}
    raw = (await request.body()).decode("utf-8", errors="replace")
    return dict(parse_qsl(raw, keep_blank_values=True))


@app.api_route("/subtopic/{name}", methods=["GET", "POST"])
async def subtopic(name: str, request: Request) -> JSONResponse:
    """Run ``pages/<name>/<method>.lua`` and return the buffered response."""
    rt = get_runtime()
    method = request.method.lower()
    post_values = await _form_values(request) if method == "post" else {}
    ctx = RequestContext(
        method=request.method,
        path=request.url.path,
        get_values=dict(request.query_params),
        post_values=post_values,
        headers=dict(request.headers),
    )
    try:
        result = await rt.run(f"pages/{name}/{method}.lua", ctx)
    except UnitNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ScriptTimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e)) from e
    except PortalError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return JSONResponse(jsonable_encoder(result.as_dict()), status_code=result.status)


# ── Server lifecycle ──────────────────────────────────────────────

_server_task: asyncio.Task | None = None


async def start_api(runtime: ScriptRuntime, host: str = "0.0.0.0", port: int = 8080) -> None:
    """Start FastAPI server in background."""
    global _runtime, _server_task
    _runtime = runtime

    import uvicorn

    config = uvicorn.Config(
        app, host=host, port=port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    _server_task = asyncio.create_task(server.serve())
    log.info("API server starting on %s:%d", host, port)


async def stop_api() -> None:
    """Stop FastAPI server."""
    global _runtime, _server_task
    if _server_task:
        _server_task.cancel()
        try:
            await _server_task
        except asyncio.CancelledError:
            pass
        _server_task = None
    _runtime = None
    log.info("API server stopped")
