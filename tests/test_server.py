"""
Connection loop (handshake, dispatch, cleanup) and the offline smoke check.
"""

import asyncio
import json

import pytest

import broadcast_pipeline
import server
import ws_commands


class FakeConnection:
    """Async-iterable fake: yields queued inbound frames, records outbound ones."""

    def __init__(self, inbound, state):
        self.inbound = list(inbound)
        self.state = state
        self.sent = []

    async def send(self, text):
        self.sent.append(json.loads(text))

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for raw in self.inbound:
            yield raw


@pytest.fixture
def fresh_text(monkeypatch):
    monkeypatch.setattr(server, "SHARED_TEXT", ws_commands.SharedText())


def test_handshake_then_dispatch_then_cleanup(store, fresh_text):
    from websockets.protocol import State

    store.save("Main.java", "x")
    conn = FakeConnection(
        [
            "not json at all",
            json.dumps({"type": "PING"}),
            json.dumps({"type": "UPDATE_TEXT", "content": "shared"}),
        ],
        State.OPEN,
    )
    asyncio.run(server.handle_connection(conn))

    assert conn.sent[0] == {"type": "TEXT_UPDATED", "content": ""}
    assert conn.sent[1] == {"type": "FILE_LIST", "files": ["Main.java"]}
    assert conn.sent[2] == {"type": "TEXT_UPDATED", "content": "shared"}
    assert len(conn.sent) == 3
    assert server.SHARED_TEXT.content == "shared"
    assert conn not in broadcast_pipeline.sessions()


def test_late_joiner_sees_current_buffer(store, fresh_text):
    from websockets.protocol import State

    server.SHARED_TEXT.replace("already typed")
    conn = FakeConnection([], State.OPEN)
    asyncio.run(server.handle_connection(conn))
    assert conn.sent[0] == {"type": "TEXT_UPDATED", "content": "already typed"}


def test_ports_for_color():
    assert server.ports_for_color("blue") == (8080, 8081)
    assert server.ports_for_color("green") == (8082, 8083)


def test_smoke_check_passes(store):
    before = store.STORE_ROOT
    assert server._run_smoke_test() == 0
    assert store.STORE_ROOT == before


@pytest.mark.parametrize(
    "bad",
    [
        {"type": "LOAD_FILE", "filename": 123},
        {"type": "SAVE_FILE", "filename": ["x"], "content": "y"},
        '{"type": "AI_CODE_COMPLETION", "content": "", "prompt": "", "language": "java", "cursorPosition": NaN}',
    ],
)
def test_malformed_frame_keeps_connection(store, fresh_text, fast_completion, monkeypatch, bad):
    from websockets.protocol import State

    import completion_pipeline

    async def gen(prompt):
        return "ok();"

    monkeypatch.setattr(completion_pipeline, "_backend_generator", lambda: gen)
    raw = bad if isinstance(bad, str) else json.dumps(bad)
    conn = FakeConnection([raw, json.dumps({"type": "UPDATE_TEXT", "content": "after"})], State.OPEN)
    asyncio.run(server.handle_connection(conn))

    assert server.SHARED_TEXT.content == "after"
    assert conn.sent[-1] == {"type": "TEXT_UPDATED", "content": "after"}
