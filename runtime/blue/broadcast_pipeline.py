# -*- coding: utf-8 -*-
"""
Session registry + fanout for the Codepad relay.

Delivery is fire-and-forget and at-most-once:
- sessions whose transport is not OPEN are skipped (no queueing)
- a send that fails drops that session and the loop continues
"""

from __future__ import annotations

import json
from typing import Any, List, Set, Union

from websockets.protocol import State


SESSIONS: Set[Any] = set()


def add_session(ws: Any) -> None:
    SESSIONS.add(ws)


def remove_session(ws: Any) -> None:
    SESSIONS.discard(ws)


def sessions() -> List[Any]:
    return list(SESSIONS)


def is_open(ws: Any) -> bool:
    # websockets connections (new and legacy) both expose .state
    state = getattr(ws, "state", None)
    if state is not None:
        return state is State.OPEN
    return bool(getattr(ws, "open", False))


def encode(msg: Union[str, dict]) -> str:
    if isinstance(msg, str):
        return msg
    return json.dumps(msg, ensure_ascii=False)


async def send_to(ws: Any, msg: Union[str, dict]) -> bool:
    """Unicast. Returns False instead of raising when the transport is gone."""
    if not is_open(ws):
        return False
    try:
        await ws.send(encode(msg))
        return True
    except Exception as e:
        print(f"[WS] send failed: {e!r}", flush=True)
        return False


async def broadcast(msg: Union[str, dict]) -> int:
    """Deliver to every open session; returns how many sends succeeded."""
    text = encode(msg)
    delivered = 0
    for ws in sessions():
        if not is_open(ws):
            continue
        try:
            await ws.send(text)
            delivered += 1
        except Exception as e:
            # Drop dead sockets quietly
            print(f"[WS] broadcast send failed, dropping session: {e!r}", flush=True)
            remove_session(ws)
    return delivered
