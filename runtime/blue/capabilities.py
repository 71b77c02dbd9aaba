# -*- coding: utf-8 -*-
"""
capabilities.py

Code-backed Capabilities Registry for the Codepad relay.

Purpose:
- Provide a stable, always-available map of "surface -> where implemented"
  for /capabilities and the --smoke boot check.

Notes:
- This module MUST be pure (no side effects) and safe to import from both
  HTTP and WS layers.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from dataclasses import field
from typing import Any, Dict, List

from codepad_config import INBOUND_TYPES


@dataclass(frozen=True)
class Capability:
    id: str
    name: str
    purpose: str
    entrypoints: List[str]
    implementation: List[str]
    state_and_artifacts: List[str]

    meta: Dict[str, Any] = field(default_factory=dict)


_REGISTRY: List[Capability] = [
    Capability(
        id="http.health",
        name="Health & runtime info",
        purpose="Expose server health, ports, runtime color, completion backend and model.",
        entrypoints=["HTTP GET /health"],
        implementation=["http_api.register_routes() -> handle_health()"],
        state_and_artifacts=["Reads: process uptime and configured env values"],
    ),
    Capability(
        id="http.files",
        name="Read-only file + version browsing",
        purpose="List saved files, fetch one file record, list and fetch its versions over HTTP.",
        entrypoints=[
            "HTTP GET /files",
            "HTTP GET /files/{filename}",
            "HTTP GET /files/{filename}/versions",
            "HTTP GET /versions/{version_id}",
        ],
        implementation=[
            "http_api.register_routes() -> handle_list_files(), handle_get_file(), handle_list_versions(), handle_get_version()",
            "file_store.list_files(), load_document(), list_versions(), load_version_record()",
        ],
        state_and_artifacts=["Reads: store/documents/*.json", "Reads: store/versions.jsonl"],
    ),
    Capability(
        id="http.capabilities",
        name="Capabilities registry",
        purpose="Return this registry as JSON.",
        entrypoints=["HTTP GET /capabilities"],
        implementation=["http_api.register_routes() -> handle_get_capabilities()"],
        state_and_artifacts=["Reads: capabilities._REGISTRY (in-process)"],
    ),
    Capability(
        id="ws.handshake",
        name="Connect handshake",
        purpose="On connect, push the shared text buffer and the file list without a request.",
        entrypoints=["WS connect"],
        implementation=["server.handle_connection()"],
        state_and_artifacts=["Reads: server.SHARED_TEXT", "Reads: store/documents/*.json"],
    ),
    Capability(
        id="ws.text",
        name="Shared text buffer",
        purpose="Replace the process-wide co-edited buffer and fan it out to every open session.",
        entrypoints=["WS frame: UPDATE_TEXT"],
        implementation=["ws_commands._handle_update_text()", "broadcast_pipeline.broadcast()"],
        state_and_artifacts=["Writes: server.SHARED_TEXT (memory only, never persisted)"],
    ),
    Capability(
        id="ws.files",
        name="Versioned file persistence",
        purpose="Save files with an append-only version history; list, load, and load historical versions.",
        entrypoints=[
            "WS frame: SAVE_FILE",
            "WS frame: GET_FILES",
            "WS frame: LOAD_FILE",
            "WS frame: LOAD_VERSION",
        ],
        implementation=[
            "ws_commands._handle_save_file(), _handle_get_files(), _handle_load_file(), _handle_load_version()",
            "file_store.save(), list_files(), load(), list_versions(), load_version()",
        ],
        state_and_artifacts=["Writes: store/documents/<name>-<sha8>.json", "Appends: store/versions.jsonl"],
    ),
    Capability(
        id="ws.completion",
        name="AI code completion",
        purpose="Prompt an external LLM for an insertable snippet, clean fences, reflow indentation, retry on failure.",
        entrypoints=["WS frame: AI_CODE_COMPLETION"],
        implementation=[
            "ws_commands._handle_ai_completion()",
            "completion_pipeline.request_completion()",
        ],
        state_and_artifacts=["Calls: Ollama /api/generate or OpenAI chat completions (no local state)"],
        meta={"backends": ["ollama", "openai"]},
    ),
    Capability(
        id="ws.ping",
        name="Client liveness ping",
        purpose="Accept client PING frames without reply.",
        entrypoints=["WS frame: PING"],
        implementation=["ws_commands._handle_ping()"],
        state_and_artifacts=["None"],
    ),
]


_WS_PREFIX = "WS frame: "
_HTTP_PREFIX = "HTTP GET /"


def validate_registry(*, required_ids: List[str] | None = None) -> List[str]:
    """
    Check the registry against the router's message set.

    - ids are unique and every required id is present
    - every "WS frame: X" entrypoint names a known inbound type
    - every inbound type is claimed by some capability
    - every capability names at least one implementation

    Returns human-readable errors; empty list means OK.
    """
    errs: List[str] = []
    seen: set[str] = set()
    claimed: set[str] = set()

    for c in _REGISTRY:
        if c.id in seen:
            errs.append(f"duplicate capability id: {c.id}")
        seen.add(c.id)
        if not c.implementation:
            errs.append(f"{c.id}: no implementation listed")

        for ep in c.entrypoints:
            if ep.startswith(_WS_PREFIX):
                mtype = ep[len(_WS_PREFIX):].strip()
                if mtype not in INBOUND_TYPES:
                    errs.append(f"{c.id}: unknown WS frame type {mtype!r}")
                claimed.add(mtype)
            elif not (ep.startswith(_HTTP_PREFIX) or ep == "WS connect"):
                errs.append(f"{c.id}: unrecognized entrypoint {ep!r}")

    for mtype in INBOUND_TYPES:
        if mtype not in claimed:
            errs.append(f"inbound type {mtype} has no capability")
    for rid in required_ids or []:
        if rid not in seen:
            errs.append(f"missing required capability: {rid}")
    return errs


def smoke_test_registry(*, required_ids: List[str]) -> tuple[bool, str]:
    errs = validate_registry(required_ids=required_ids)
    if errs:
        return False, "capabilities registry FAILED:\n- " + "\n- ".join(errs)
    return True, "ok"


def get_registry_json() -> List[Dict[str, Any]]:
    return [asdict(c) for c in _REGISTRY]
