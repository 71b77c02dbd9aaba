import asyncio
import json
import os
import time

import aiohttp
import websockets

HTTP_BASE = os.environ.get("CODEPAD_SMOKE_HTTP", "http://localhost:8081")
WS_URL = os.environ.get("CODEPAD_SMOKE_WS", "ws://localhost:8080/")

# Unique per run so reruns against a persistent store still start at version 1.
FILENAME = f"Smoke_{int(time.time())}.java"
V1 = "class Smoke {\n  // v1\n}\n"
V2 = "class Smoke {\n  // v2\n}\n"
V3 = "class Smoke {\n  // v3\n}\n"

# Set CODEPAD_SMOKE_AI=1 when an LLM backend is reachable.
RUN_AI = os.environ.get("CODEPAD_SMOKE_AI", "") == "1"


async def recv_until(ws, want_type: str, *, timeout_s: float = 5.0) -> dict:
    """
    Read frames until one with type == want_type arrives (broadcasts from other
    activity may interleave). Raises TimeoutError if none shows up.
    """
    deadline = time.monotonic() + timeout_s
    while True:
        left = deadline - time.monotonic()
        if left <= 0:
            raise TimeoutError(f"no {want_type} frame within {timeout_s}s")
        raw = await asyncio.wait_for(ws.recv(), timeout=left)
        obj = json.loads(raw)
        if obj.get("type") == want_type:
            return obj


async def send(ws, obj: dict) -> None:
    await ws.send(json.dumps(obj))


async def main():
    # 1) HTTP health
    async with aiohttp.ClientSession() as sess:
        r = await sess.get(f"{HTTP_BASE}/health")
        assert r.status == 200, (r.status, await r.text())
        health = await r.json()
        print("health:", health)

    async with websockets.connect(WS_URL) as ws, websockets.connect(WS_URL) as peer:
        # 2) Handshake: both connections get TEXT_UPDATED + FILE_LIST unprompted
        for conn in (ws, peer):
            hello = await recv_until(conn, "TEXT_UPDATED")
            assert "content" in hello, hello
            files = await recv_until(conn, "FILE_LIST")
            assert isinstance(files.get("files"), list), files

        # 3) Shared buffer fans out to the peer
        await send(ws, {"type": "UPDATE_TEXT", "content": "shared smoke text"})
        upd = await recv_until(peer, "TEXT_UPDATED")
        assert upd["content"] == "shared smoke text", upd

        # 4) Three saves -> two versions (1, 2)
        for body in (V1, V2, V3):
            await send(ws, {"type": "SAVE_FILE", "filename": FILENAME, "content": body})
            saved = await recv_until(peer, "FILE_SAVED")
            assert saved["filename"] == FILENAME, saved
            listed = await recv_until(ws, "FILE_LIST")
            assert listed["files"].count(FILENAME) == 1, listed

        # 5) LOAD_FILE -> FILE_LOADED + FILE_VERSIONS (newest first)
        await send(ws, {"type": "LOAD_FILE", "filename": FILENAME})
        loaded = await recv_until(ws, "FILE_LOADED")
        assert loaded["content"] == V3, loaded
        versions = (await recv_until(ws, "FILE_VERSIONS"))["versions"]
        assert [v["version"] for v in versions] == [2, 1], versions

        # 6) LOAD_VERSION reproduces the pre-overwrite content
        await send(ws, {"type": "LOAD_VERSION", "filename": FILENAME, "versionId": versions[-1]["id"]})
        old = await recv_until(ws, "FILE_LOADED")
        assert old["content"] == V1, old

        # 7) Missing file -> explicit ERROR, connection stays usable
        await send(ws, {"type": "LOAD_FILE", "filename": "does-not-exist.java"})
        err = await recv_until(ws, "ERROR")
        assert err["request"] == "LOAD_FILE", err
        await send(ws, {"type": "PING"})
        await send(ws, {"type": "GET_FILES"})
        await recv_until(ws, "FILE_LIST")

        # 8) Optional: completion round trip
        if RUN_AI:
            await send(ws, {
                "type": "AI_CODE_COMPLETION",
                "content": V3,
                "prompt": "// v3",
                "language": "java",
            })
            raw = await asyncio.wait_for(ws.recv(), timeout=120)
            print("completion:", raw)

    # 9) HTTP mirrors what the WS wrote
    async with aiohttp.ClientSession() as sess:
        r = await sess.get(f"{HTTP_BASE}/files/{FILENAME}/versions")
        assert r.status == 200, (r.status, await r.text())
        body = await r.json()
        assert [v["version"] for v in body["versions"]] == [2, 1], body

    print("OK: smoke test passed.")


if __name__ == "__main__":
    asyncio.run(main())
