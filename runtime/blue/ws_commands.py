"""
WebSocket message router for the Codepad relay.

Handles (one inbound frame per dispatch() call, by "type"):
- UPDATE_TEXT        replace the shared text buffer, broadcast TEXT_UPDATED
- SAVE_FILE          persist (+ version snapshot), broadcast FILE_SAVED + FILE_LIST
- GET_FILES          unicast FILE_LIST
- LOAD_FILE          unicast FILE_LOADED, then FILE_VERSIONS
- LOAD_VERSION       unicast FILE_LOADED with the historical content
- AI_CODE_COMPLETION unicast AI_CODE_COMPLETION, or ERROR on terminal failure
- PING               liveness only, no reply

Unknown types are ignored unless ctx.STRICT_MESSAGES is set.
Store faults become a unicast ERROR frame; the connection stays open.
"""


from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import broadcast_pipeline
import completion_pipeline
import file_store
from codepad_config import (
    MSG_AI_CODE_COMPLETION,
    MSG_GET_FILES,
    MSG_LOAD_FILE,
    MSG_LOAD_VERSION,
    MSG_PING,
    MSG_SAVE_FILE,
    MSG_UPDATE_TEXT,
    OUT_ERROR,
    OUT_FILE_LIST,
    OUT_FILE_LOADED,
    OUT_FILE_SAVED,
    OUT_FILE_VERSIONS,
    OUT_TEXT_UPDATED,
)


class SharedText:
    """
    Process-wide co-edited buffer, independent of any saved file.

    Single writer: only the UPDATE_TEXT handler calls replace(). Last write wins.
    """

    def __init__(self) -> None:
        self.content = ""
        self.updated_at = 0.0

    def replace(self, content: str) -> str:
        self.content = "" if content is None else str(content)
        self.updated_at = time.time()
        return self.content


def _error_frame(request: str, err: Any) -> Dict[str, Any]:
    return {"type": OUT_ERROR, "request": request, "error": str(err)}


def _cursor_position(raw: Any) -> Optional[int]:
    """JSON allows NaN and Infinity; neither is a usable offset."""
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    if not math.isfinite(raw):
        return None
    return int(raw)


async def file_list_frame() -> Dict[str, Any]:
    files = await asyncio.to_thread(file_store.list_files)
    return {"type": OUT_FILE_LIST, "files": files}


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def _handle_update_text(*, ctx: Any, websocket: Any, frame: Dict[str, Any]) -> None:
    text = ctx.SHARED_TEXT.replace(frame.get("content"))
    await broadcast_pipeline.broadcast({"type": OUT_TEXT_UPDATED, "content": text})


async def _handle_save_file(*, ctx: Any, websocket: Any, frame: Dict[str, Any]) -> None:
    doc = await asyncio.to_thread(
        file_store.save,
        frame.get("filename"),
        frame.get("content"),
        frame.get("language"),
    )
    await broadcast_pipeline.broadcast({"type": OUT_FILE_SAVED, "filename": doc.filename})
    await broadcast_pipeline.broadcast(await file_list_frame())


async def _handle_get_files(*, ctx: Any, websocket: Any, frame: Dict[str, Any]) -> None:
    await broadcast_pipeline.send_to(websocket, await file_list_frame())


async def _handle_load_file(*, ctx: Any, websocket: Any, frame: Dict[str, Any]) -> None:
    filename = frame.get("filename")
    content = await asyncio.to_thread(file_store.load, filename)
    await broadcast_pipeline.send_to(
        websocket, {"type": OUT_FILE_LOADED, "filename": filename, "content": content}
    )
    versions = await asyncio.to_thread(file_store.list_versions, filename)
    await broadcast_pipeline.send_to(
        websocket, {"type": OUT_FILE_VERSIONS, "filename": filename, "versions": versions}
    )


async def _handle_load_version(*, ctx: Any, websocket: Any, frame: Dict[str, Any]) -> None:
    version_id = frame.get("versionId")
    content = await asyncio.to_thread(file_store.load_version, version_id)
    await broadcast_pipeline.send_to(
        websocket,
        {
            "type": OUT_FILE_LOADED,
            "filename": frame.get("filename"),
            "content": content,
            "versionId": version_id,
        },
    )


async def _handle_ai_completion(*, ctx: Any, websocket: Any, frame: Dict[str, Any]) -> None:
    result = await completion_pipeline.request_completion(
        content=frame.get("content") or "",
        prompt=frame.get("prompt") or "",
        language=frame.get("language") or "",
        is_voice_prompt=bool(frame.get("isVoicePrompt")),
        cursor_position=_cursor_position(frame.get("cursorPosition")),
    )
    if not result.ok:
        print(f"[AI] completion failed: {result.error}", flush=True)
    await broadcast_pipeline.send_to(websocket, result.to_frame())


async def _handle_ping(*, ctx: Any, websocket: Any, frame: Dict[str, Any]) -> None:
    return None


HANDLERS: Dict[str, Callable[..., Awaitable[None]]] = {
    MSG_UPDATE_TEXT: _handle_update_text,
    MSG_SAVE_FILE: _handle_save_file,
    MSG_GET_FILES: _handle_get_files,
    MSG_LOAD_FILE: _handle_load_file,
    MSG_LOAD_VERSION: _handle_load_version,
    MSG_AI_CODE_COMPLETION: _handle_ai_completion,
    MSG_PING: _handle_ping,
}


async def dispatch(*, ctx: Any, websocket: Any, frame: Any) -> Optional[str]:
    """
    Route one parsed frame. Returns the handled type, or None if ignored.

    ctx is expected to be the server module (sys.modules[__name__]) and must expose:
      - SHARED_TEXT      (SharedText)
      - STRICT_MESSAGES  (bool)
    """
    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        print("[WS] ignoring frame without a string 'type'", flush=True)
        return None

    ftype = frame["type"]
    handler = HANDLERS.get(ftype)
    if handler is None:
        if getattr(ctx, "STRICT_MESSAGES", False):
            await broadcast_pipeline.send_to(websocket, _error_frame(ftype, "unsupported message type"))
        else:
            print(f"[WS] ignoring unknown message type: {ftype!r}", flush=True)
        return None

    try:
        await handler(ctx=ctx, websocket=websocket, frame=frame)
    except file_store.StorageFault as e:
        print(f"[WS] {ftype} failed: {e!r}", flush=True)
        await broadcast_pipeline.send_to(websocket, _error_frame(ftype, e))
    except Exception as e:
        # malformed payload: fail this frame only, keep the connection
        print(f"[WS] {ftype} failed: {e!r}", flush=True)
        await broadcast_pipeline.send_to(websocket, _error_frame(ftype, e))
    return ftype
