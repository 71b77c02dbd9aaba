import json

import pytest
from websockets.protocol import State

import broadcast_pipeline
import completion_pipeline
import file_store


class FakeSession:
    """Stand-in for a websockets connection: records what was sent."""

    def __init__(self, state=State.OPEN, fail_with=None):
        self.state = state
        self.fail_with = fail_with
        self.sent = []

    async def send(self, text):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(text)

    def frames(self):
        return [json.loads(s) for s in self.sent]

    def types(self):
        return [f.get("type") for f in self.frames()]


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def store(tmp_path):
    prev = file_store.STORE_ROOT
    file_store.configure(store_root=tmp_path / "store")
    file_store.ensure_store_scaffold()
    yield file_store
    file_store.STORE_ROOT = prev


@pytest.fixture(autouse=True)
def _clean_sessions():
    broadcast_pipeline.SESSIONS.clear()
    yield
    broadcast_pipeline.SESSIONS.clear()


@pytest.fixture
def fast_completion(monkeypatch):
    """No real waits between retries and cursor reflow, whatever the env says."""
    monkeypatch.setattr(completion_pipeline, "RETRY_DELAY_S", 0.0)
    monkeypatch.setattr(completion_pipeline, "MAX_RETRIES", 3)
    monkeypatch.setattr(completion_pipeline, "INDENT_MODE", "cursor")
    return completion_pipeline
