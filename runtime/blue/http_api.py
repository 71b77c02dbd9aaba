# -*- coding: utf-8 -*-
"""
HTTP API for the Codepad relay (read-only).

Design:
- No import of server.py (avoids circular imports).
- server.py passes ctx=sys.modules[__name__] to register_routes().
- Writes go through the WebSocket router only; this surface never mutates the store.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict

from aiohttp import web

import broadcast_pipeline
import capabilities
import completion_pipeline
import file_store


def _json(payload: Dict[str, Any], *, status: int = 200) -> web.Response:
    resp = web.json_response(payload, status=status)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    return resp


def _fault_response(e: file_store.StorageFault) -> web.Response:
    if isinstance(e, file_store.NotFound):
        return _json({"ok": False, "error": str(e)}, status=404)
    print(f"[HTTP] store fault: {e!r}", flush=True)
    return _json({"ok": False, "error": str(e)}, status=503)


def register_routes(app: web.Application, *, ctx) -> None:
    """
    Register aiohttp routes on the given app.

    ctx is expected to be the running server module (sys.modules[__name__]) so we can
    read HOST / ports / color without importing server.py.
    """

    async def handle_health(request: web.Request) -> web.Response:
        up_s = max(0, int(time.time() - ctx.SERVER_START_TIME))
        backend = completion_pipeline.BACKEND
        payload = {
            "ok": True,
            "color": ctx.SERVER_COLOR,
            "host": ctx.HOST,
            "ws_port": ctx.WS_PORT,
            "http_port": ctx.HTTP_PORT,
            "uptime_s": up_s,
            "store_root": str(file_store.STORE_ROOT or ""),
            "completion_backend": backend,
            "model": completion_pipeline.OPENAI_MODEL if backend == "openai" else completion_pipeline.OLLAMA_MODEL,
            "sessions": len(broadcast_pipeline.sessions()),
            "timestamp": ctx.now_iso(),
        }
        return _json(payload)

    async def handle_get_capabilities(request: web.Request) -> web.Response:
        return _json({"ok": True, "capabilities": capabilities.get_registry_json()})

    async def handle_list_files(request: web.Request) -> web.Response:
        files = await asyncio.to_thread(file_store.list_files)
        return _json({"ok": True, "files": files})

    async def handle_get_file(request: web.Request) -> web.Response:
        filename = request.match_info.get("filename", "")
        try:
            doc = await asyncio.to_thread(file_store.load_document, filename)
        except file_store.StorageFault as e:
            return _fault_response(e)
        return _json({"ok": True, "file": doc.to_dict()})

    async def handle_list_versions(request: web.Request) -> web.Response:
        filename = request.match_info.get("filename", "")
        try:
            versions = await asyncio.to_thread(file_store.list_versions, filename)
        except file_store.StorageFault as e:
            return _fault_response(e)
        return _json({"ok": True, "filename": filename, "versions": versions})

    async def handle_get_version(request: web.Request) -> web.Response:
        version_id = request.match_info.get("version_id", "")
        try:
            rec = await asyncio.to_thread(file_store.load_version_record, version_id)
        except file_store.StorageFault as e:
            return _fault_response(e)
        return _json({"ok": True, "version": rec.to_dict()})

    app.router.add_get("/health", handle_health)
    app.router.add_get("/capabilities", handle_get_capabilities)
    app.router.add_get("/files", handle_list_files)
    app.router.add_get("/files/{filename:.+}/versions", handle_list_versions)
    app.router.add_get("/files/{filename:.+}", handle_get_file)
    app.router.add_get("/versions/{version_id}", handle_get_version)
