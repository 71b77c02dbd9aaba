# -*- coding: utf-8 -*-
"""
Codepad relay server

Goals:
- WebSocket relay for a collaborative code editor (shared text buffer + fanout).
- Disk-backed files with an append-only version history.
- AI code completion via an external LLM with retry.
- Read-only HTTP API + health.

Environment variables (a .env file in the working directory is loaded first):
- CODEPAD_PROJECT_ROOT              (default: folder containing this file, or cwd if it holds store/)
- CODEPAD_STORE_DIR                 (default: <root>/store)
- CODEPAD_HOST                      (default: localhost)
- CODEPAD_WS_PORT / CODEPAD_HTTP_PORT (default: by runtime color)
- CODEPAD_SERVER_COLOR              (blue|green; default inferred from runtime/<color>)
- CODEPAD_COMPLETION_BACKEND        (ollama|openai; default: ollama)
- OLLAMA_URL                        (default: http://localhost:11434)
- CODEPAD_OLLAMA_MODEL              (default: llama3.2)
- OPENAI_MODEL / OPENAI_API_KEY / OPENAI_BASE_URL (openai backend)
- CODEPAD_COMPLETION_MAX_RETRIES    (default: 3)
- CODEPAD_COMPLETION_RETRY_DELAY_S  (default: 1.0)
- CODEPAD_COMPLETION_TIMEOUT_S      (default: unset, no timeout)
- CODEPAD_INDENT_MODE               (cursor|baseline|none; default: cursor)
- CODEPAD_STRICT_MESSAGES           (1 = answer unknown types with ERROR)
"""
from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

import websockets  # noqa: E402
from websockets.exceptions import ConnectionClosedOK, ConnectionClosedError  # noqa: E402
from aiohttp import web  # noqa: E402

import broadcast_pipeline  # noqa: E402
import capabilities  # noqa: E402
import completion_pipeline  # noqa: E402
import file_store  # noqa: E402
import http_api  # noqa: E402
import ws_commands  # noqa: E402
from codepad_config import (  # noqa: E402
    DEFAULT_MAX_RETRIES,
    DEFAULT_OLLAMA_MODEL,
    DEFAULT_OLLAMA_URL,
    DEFAULT_OPENAI_MODEL,
    DEFAULT_RETRY_DELAY_S,
    OUT_TEXT_UPDATED,
    env_flag,
)
from path_engine import now_iso  # noqa: E402

# -----------------------------------------------------------------------------
# PROJECT ROOT (must be defined before any derived paths)
# -----------------------------------------------------------------------------

_env_root = (os.environ.get("CODEPAD_PROJECT_ROOT") or "").strip()
if _env_root:
    PROJECT_ROOT = Path(_env_root).resolve()
else:
    _cwd = Path(os.getcwd()).resolve()
    _file_dir = Path(__file__).resolve().parent
    if (_cwd / "store").exists() or _cwd == _file_dir:
        PROJECT_ROOT = _cwd
    else:
        PROJECT_ROOT = _file_dir

_env_store = (os.environ.get("CODEPAD_STORE_DIR") or "").strip()
STORE_DIR = Path(_env_store).expanduser().resolve() if _env_store else (PROJECT_ROOT / "store")

SERVER_START_TIME = time.time()


# =============================================================================
# Config
# =============================================================================

def infer_server_color() -> str:
    """Infer the running instance color.

    Precedence:
    1) CODEPAD_SERVER_COLOR env
    2) path contains runtime/blue or runtime/green
    3) default blue
    """
    env = (os.environ.get("CODEPAD_SERVER_COLOR") or "").strip().lower()
    if env in ("blue", "green"):
        return env
    parts = [p.lower() for p in Path(__file__).resolve().parts]
    for i in range(len(parts) - 1):
        if parts[i] == "runtime" and parts[i + 1] in ("blue", "green"):
            return parts[i + 1]
    return "blue"


SERVER_COLOR = infer_server_color()

DEFAULT_HOST = (os.environ.get("CODEPAD_HOST") or "localhost").strip() or "localhost"

DEFAULT_WS_PORT_BLUE = 8080
DEFAULT_HTTP_PORT_BLUE = 8081
# Use +2 so blue and green can run side by side.
DEFAULT_WS_PORT_GREEN = DEFAULT_WS_PORT_BLUE + 2
DEFAULT_HTTP_PORT_GREEN = DEFAULT_HTTP_PORT_BLUE + 2


def ports_for_color(color: str) -> Tuple[int, int]:
    c = (color or "").strip().lower()
    if c == "green":
        return DEFAULT_WS_PORT_GREEN, DEFAULT_HTTP_PORT_GREEN
    return DEFAULT_WS_PORT_BLUE, DEFAULT_HTTP_PORT_BLUE


HOST = DEFAULT_HOST
WS_PORT = int((os.environ.get("CODEPAD_WS_PORT") or "").strip() or ports_for_color(SERVER_COLOR)[0])
HTTP_PORT = int((os.environ.get("CODEPAD_HTTP_PORT") or "").strip() or ports_for_color(SERVER_COLOR)[1])

COMPLETION_BACKEND = (os.environ.get("CODEPAD_COMPLETION_BACKEND") or "ollama").strip().lower()
OLLAMA_URL = (os.environ.get("OLLAMA_URL") or DEFAULT_OLLAMA_URL).strip()
OLLAMA_MODEL = (os.environ.get("CODEPAD_OLLAMA_MODEL") or DEFAULT_OLLAMA_MODEL).strip()
OPENAI_MODEL = (os.environ.get("OPENAI_MODEL") or DEFAULT_OPENAI_MODEL).strip()
COMPLETION_MAX_RETRIES = int(os.environ.get("CODEPAD_COMPLETION_MAX_RETRIES") or str(DEFAULT_MAX_RETRIES))
COMPLETION_RETRY_DELAY_S = float(os.environ.get("CODEPAD_COMPLETION_RETRY_DELAY_S") or str(DEFAULT_RETRY_DELAY_S))
_timeout_raw = (os.environ.get("CODEPAD_COMPLETION_TIMEOUT_S") or "").strip()
COMPLETION_TIMEOUT_S: Optional[float] = float(_timeout_raw) if _timeout_raw else None
INDENT_MODE = (os.environ.get("CODEPAD_INDENT_MODE") or "cursor").strip().lower()
STRICT_MESSAGES = env_flag(os.environ.get("CODEPAD_STRICT_MESSAGES") or "")

# Configure store + completion modules
file_store.configure(store_root=STORE_DIR)
completion_pipeline.configure(
    backend=COMPLETION_BACKEND,
    ollama_url=OLLAMA_URL,
    ollama_model=OLLAMA_MODEL,
    openai_model=OPENAI_MODEL,
    max_retries=COMPLETION_MAX_RETRIES,
    retry_delay_s=COMPLETION_RETRY_DELAY_S,
    indent_mode=INDENT_MODE,
    timeout_s=COMPLETION_TIMEOUT_S,
)

# Process-wide co-edited buffer (see ws_commands.SharedText for the writer contract)
SHARED_TEXT = ws_commands.SharedText()


# =============================================================================
# WebSocket connection loop
# =============================================================================

async def handle_connection(websocket, path=None):  # path optional for websockets compatibility
    print("[WS] Client connected", flush=True)
    broadcast_pipeline.add_session(websocket)
    ctx = sys.modules[__name__]

    try:
        # Handshake: current buffer + file list, unprompted.
        await broadcast_pipeline.send_to(websocket, {"type": OUT_TEXT_UPDATED, "content": SHARED_TEXT.content})
        await broadcast_pipeline.send_to(websocket, await ws_commands.file_list_frame())

        async for raw_msg in websocket:
            try:
                frame: Any = json.loads(raw_msg)
            except (TypeError, ValueError):
                print("[WS] ignoring non-JSON frame", flush=True)
                continue
            await ws_commands.dispatch(ctx=ctx, websocket=websocket, frame=frame)
    except (ConnectionClosedOK, ConnectionClosedError) as e:
        print(f"[WS] Connection closed: {e!r}", flush=True)
    finally:
        broadcast_pipeline.remove_session(websocket)
        print("[WS] Client disconnected", flush=True)


# =============================================================================
# Boot / shutdown
# =============================================================================

_SHUTDOWN_EVENT: Optional[asyncio.Event] = None


def request_shutdown(reason: str = "") -> None:
    print(f"[BOOT] shutdown requested ({reason or 'unspecified'})", flush=True)
    if _SHUTDOWN_EVENT is not None:
        _SHUTDOWN_EVENT.set()


def _ws_process_request(*args, **kwargs):
    """
    Plain HTTP hits on the WS port (health probes, proxies) get a 200 instead of
    an upgrade-failure traceback. Real upgrades pass through.
    """
    headers = None
    if len(args) == 2:
        a0, a1 = args
        if isinstance(a0, str):
            headers = a1
        else:
            headers = getattr(a1, "headers", None)

    def hget(key: str) -> str:
        if not headers:
            return ""
        return headers.get(key, "") or ""

    conn = hget("Connection").lower()
    upg = hget("Upgrade").lower()
    if ("upgrade" not in conn) or ("websocket" not in upg):
        if len(args) == 2 and not isinstance(args[0], str):
            return args[0].respond(200, "Codepad WebSocket Port Active\n")
        body = b"Codepad WebSocket Port Active\n"
        return (200, [("Content-Type", "text/plain"), ("Content-Length", str(len(body)))], body)
    return None


async def main() -> None:
    global _SHUTDOWN_EVENT

    file_store.ensure_store_scaffold()

    print(f"[BOOT] PROJECT_ROOT={PROJECT_ROOT}", flush=True)
    print(f"[BOOT] STORE_DIR={STORE_DIR}", flush=True)
    print(f"[BOOT] COMPLETION_BACKEND={COMPLETION_BACKEND} INDENT_MODE={INDENT_MODE}", flush=True)
    print(f"[BOOT] SERVER_COLOR={SERVER_COLOR}", flush=True)
    print(f"[BOOT] WebSocket: ws://{HOST}:{WS_PORT}", flush=True)
    print(f"[BOOT] HTTP:      http://{HOST}:{HTTP_PORT}", flush=True)

    _SHUTDOWN_EVENT = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown, "signal")
        except (NotImplementedError, RuntimeError):
            # Windows event loops don't support signal handlers
            pass

    ws_server = await websockets.serve(
        handle_connection,
        HOST,
        WS_PORT,
        process_request=_ws_process_request,
        ping_interval=30,
        ping_timeout=120,
        close_timeout=10,
        max_size=2**22,
    )

    app = web.Application()
    http_api.register_routes(app, ctx=sys.modules[__name__])
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, HOST, HTTP_PORT)
    await site.start()

    try:
        await _SHUTDOWN_EVENT.wait()
    finally:
        ws_server.close()
        await ws_server.wait_closed()
        await runner.cleanup()


# =============================================================================
# Offline smoke check
# =============================================================================

REQUIRED_CAPABILITIES = [
    "http.health",
    "http.files",
    "http.capabilities",
    "ws.handshake",
    "ws.text",
    "ws.files",
    "ws.completion",
    "ws.ping",
]


def _smoke_test_store_roundtrip() -> Tuple[bool, str]:
    """
    Save twice into a throwaway store and read the snapshot back.
    Restores the configured store root afterwards. No network.
    """
    prev_root = file_store.STORE_ROOT
    try:
        with tempfile.TemporaryDirectory() as td:
            file_store.configure(store_root=Path(td))
            file_store.save("Smoke.java", "v1")
            file_store.save("Smoke.java", "v2")
            versions = file_store.list_versions("Smoke.java")
            if [v["version"] for v in versions] != [1]:
                return False, f"unexpected versions: {versions}"
            if file_store.load_version(versions[0]["id"]) != "v1":
                return False, "snapshot content mismatch"
            if file_store.load("Smoke.java") != "v2":
                return False, "current content mismatch"
        return True, "ok"
    except Exception as e:
        return False, f"store smoke crashed: {e!r}"
    finally:
        if prev_root is not None:
            file_store.configure(store_root=prev_root)


def _run_smoke_test() -> int:
    ok, note = capabilities.smoke_test_registry(required_ids=REQUIRED_CAPABILITIES)
    if not ok:
        print(f"[SMOKE] capabilities registry FAILED:\n{note}", flush=True)
        return 1
    print("[SMOKE] capabilities registry OK", flush=True)

    ok, note = _smoke_test_store_roundtrip()
    if not ok:
        print(f"[SMOKE] store round trip FAILED: {note}", flush=True)
        return 1
    print("[SMOKE] store round trip OK", flush=True)
    return 0


if __name__ == "__main__":
    # Smoke test short-circuit (must run BEFORE asyncio loop)
    if len(sys.argv) > 1 and sys.argv[1].strip().lower() in ("--smoke", "smoke"):
        raise SystemExit(_run_smoke_test())

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
