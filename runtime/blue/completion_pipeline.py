# -*- coding: utf-8 -*-
"""
AI code-completion pipeline for the Codepad relay.

Flow per request:
  build_prompt() -> generate (one network call per attempt) -> strip_code_fences()
  -> reflow (cursor / baseline / none) -> CompletionResult

Retries:
- Any attempt failure (transport error, non-2xx, malformed body) waits
  RETRY_DELAY_S and tries again, up to MAX_RETRIES attempts total.
- Exhaustion yields CompletionResult(ok=False, ...). Error text never travels
  in the snippet field.

Design:
- No import of server.py. server.py calls configure() once at boot.
- One attempt in flight per request; requests are never cancelled mid-retry.
"""

from __future__ import annotations

import asyncio
import os
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

try:
    from openai import OpenAI  # type: ignore
except Exception:
    OpenAI = None  # type: ignore

from codepad_config import (
    COMPLETION_BACKENDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_OLLAMA_MODEL,
    DEFAULT_OLLAMA_URL,
    DEFAULT_OPENAI_MODEL,
    DEFAULT_RETRY_DELAY_S,
    INDENT_MODES,
    MSG_AI_CODE_COMPLETION,
    OUT_AI_CODE_COMPLETION,
    OUT_ERROR,
)


class CompletionFault(Exception):
    """One generation attempt failed (network, status, or response shape)."""


@dataclass(frozen=True)
class CompletionResult:
    ok: bool
    snippet: str = ""
    error: str = ""
    attempts: int = 0

    def to_frame(self) -> Dict[str, Any]:
        if self.ok:
            return {"type": OUT_AI_CODE_COMPLETION, "content": self.snippet}
        return {
            "type": OUT_ERROR,
            "request": MSG_AI_CODE_COMPLETION,
            "error": self.error,
            "attempts": self.attempts,
        }


# -----------------------------------------------------------------------------
# Configuration (must be called by server.py)
# -----------------------------------------------------------------------------

BACKEND = "ollama"
OLLAMA_URL = DEFAULT_OLLAMA_URL
OLLAMA_MODEL = DEFAULT_OLLAMA_MODEL
OPENAI_MODEL = DEFAULT_OPENAI_MODEL
MAX_RETRIES = DEFAULT_MAX_RETRIES
RETRY_DELAY_S = DEFAULT_RETRY_DELAY_S
INDENT_MODE = "cursor"
TIMEOUT_S: Optional[float] = None

_OPENAI_CLIENT = None


def configure(
    *,
    backend: str = "ollama",
    ollama_url: str = DEFAULT_OLLAMA_URL,
    ollama_model: str = DEFAULT_OLLAMA_MODEL,
    openai_model: str = DEFAULT_OPENAI_MODEL,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay_s: float = DEFAULT_RETRY_DELAY_S,
    indent_mode: str = "cursor",
    timeout_s: Optional[float] = None,
) -> None:
    global BACKEND, OLLAMA_URL, OLLAMA_MODEL, OPENAI_MODEL
    global MAX_RETRIES, RETRY_DELAY_S, INDENT_MODE, TIMEOUT_S

    b = (backend or "").strip().lower()
    if b not in COMPLETION_BACKENDS:
        raise ValueError(f"backend must be one of {COMPLETION_BACKENDS}, got {backend!r}")
    m = (indent_mode or "").strip().lower()
    if m not in INDENT_MODES:
        raise ValueError(f"indent_mode must be one of {INDENT_MODES}, got {indent_mode!r}")

    BACKEND = b
    OLLAMA_URL = (ollama_url or DEFAULT_OLLAMA_URL).strip().rstrip("/")
    OLLAMA_MODEL = (ollama_model or DEFAULT_OLLAMA_MODEL).strip()
    OPENAI_MODEL = (openai_model or DEFAULT_OPENAI_MODEL).strip()
    MAX_RETRIES = max(1, int(max_retries))
    RETRY_DELAY_S = max(0.0, float(retry_delay_s))
    INDENT_MODE = m
    TIMEOUT_S = float(timeout_s) if timeout_s else None


# -----------------------------------------------------------------------------
# Prompt + text shaping (pure)
# -----------------------------------------------------------------------------

def build_prompt(content: str, prompt: str, language: str, *, is_voice_prompt: bool = False) -> str:
    lang = (language or "").strip() or "source"
    code = content or ""
    instr = prompt or ""
    if is_voice_prompt:
        return (
            f"Given this {lang} code:\n"
            f"{code}\n\n"
            "The cursor is marked with |CURSOR|.\n"
            f'Voice command: "{instr}"\n\n'
            "Return only the code that should be inserted at the cursor position (|CURSOR|).\n"
            "No explanations, no backticks, just the code to insert."
        )
    return (
        f"Given this {lang} code:\n"
        f"{code}\n\n"
        f'The text "{instr}" in the code should be replaced with appropriate code.\n'
        f'Return only the code that should replace "{instr}".\n'
        "No explanations, no backticks, just the replacement code."
    )


_FENCE_OPEN_RE = re.compile(r"^```[\w+#.-]*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?```$")
_FENCE_ANY_OPEN_RE = re.compile(r"```[\w+#.-]*\n?")
_FENCE_ANY_CLOSE_RE = re.compile(r"\n?```")


def strip_code_fences(text: str) -> str:
    """
    Textual fence removal. Not a parser: a literal ``` inside a string in the
    generated code is stripped too.
    """
    s = text or ""
    s = _FENCE_OPEN_RE.sub("", s, count=1)
    s = _FENCE_CLOSE_RE.sub("", s, count=1)
    s = _FENCE_ANY_OPEN_RE.sub("", s)
    s = _FENCE_ANY_CLOSE_RE.sub("", s)
    return s.strip()


def normalize_indentation(code: str) -> str:
    """Drop blank lines and remove the smallest shared leading indent."""
    lines = [ln for ln in (code or "").split("\n") if ln.strip()]
    if not lines:
        return ""
    min_indent = min(len(ln) - len(ln.lstrip()) for ln in lines)
    return "\n".join(ln[min_indent:] for ln in lines)


def line_indentation(content: str, cursor_position: int) -> int:
    """Leading spaces of the source line holding cursor_position (0 past the end)."""
    pos = 0
    for line in (content or "").split("\n"):
        pos += len(line) + 1
        if pos > cursor_position:
            return len(line) - len(line.lstrip(" "))
    return 0


def indent_code(code: str, base_indentation: int) -> str:
    pad = " " * max(0, int(base_indentation))
    return "\n".join((pad + ln) if ln.strip() else "" for ln in (code or "").split("\n"))


def reflow(snippet: str, *, content: str, cursor_position: Optional[int], mode: str) -> str:
    if mode == "baseline":
        return normalize_indentation(snippet)
    if mode == "cursor" and cursor_position is not None:
        return indent_code(snippet, line_indentation(content, int(cursor_position)))
    return snippet


# -----------------------------------------------------------------------------
# Backends (one network call each)
# -----------------------------------------------------------------------------

async def _generate_ollama(full_prompt: str) -> str:
    url = OLLAMA_URL + "/api/generate"
    payload = {"model": OLLAMA_MODEL, "prompt": full_prompt, "stream": False}
    timeout = aiohttp.ClientTimeout(total=TIMEOUT_S)
    async with aiohttp.ClientSession(timeout=timeout) as sess:
        async with sess.post(url, json=payload) as resp:
            if resp.status < 200 or resp.status >= 300:
                raise CompletionFault(f"HTTP error! status: {resp.status}")
            data = await resp.json(content_type=None)
    text = data.get("response") if isinstance(data, dict) else None
    if not isinstance(text, str):
        raise CompletionFault("malformed response: missing 'response' text")
    return text


def call_openai_chat(messages: List[Dict[str, str]]) -> str:
    """
    Blocking helper for the OpenAI chat call.

    Requires:
      - OPENAI_API_KEY
    Optional:
      - OPENAI_BASE_URL (for OpenAI-compatible servers)
    """
    if OpenAI is None:
        raise CompletionFault("openai SDK is not installed.")
    if not (os.environ.get("OPENAI_API_KEY") or "").strip():
        raise CompletionFault("OPENAI_API_KEY is not set.")

    global _OPENAI_CLIENT
    if _OPENAI_CLIENT is None:
        kwargs: Dict[str, Any] = {}
        if (os.environ.get("OPENAI_BASE_URL") or "").strip():
            kwargs["base_url"] = os.environ["OPENAI_BASE_URL"].strip()
        if TIMEOUT_S:
            kwargs["timeout"] = TIMEOUT_S
        _OPENAI_CLIENT = OpenAI(**kwargs)  # type: ignore
    resp = _OPENAI_CLIENT.chat.completions.create(model=OPENAI_MODEL, messages=messages)
    out = resp.choices[0].message.content
    if not isinstance(out, str):
        raise CompletionFault("malformed response: empty message content")
    return out


async def _generate_openai(full_prompt: str) -> str:
    messages = [{"role": "user", "content": full_prompt}]
    return await asyncio.to_thread(call_openai_chat, messages)


def _backend_generator() -> Callable[[str], Awaitable[str]]:
    if BACKEND == "openai":
        return _generate_openai
    return _generate_ollama


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------

async def request_completion(
    *,
    content: str,
    prompt: str,
    language: str,
    is_voice_prompt: bool = False,
    cursor_position: Optional[int] = None,
    generate: Optional[Callable[[str], Awaitable[str]]] = None,
    max_retries: Optional[int] = None,
    retry_delay_s: Optional[float] = None,
    indent_mode: Optional[str] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> CompletionResult:
    """
    Turn (code context, instruction, language) into an insertable snippet.

    Keyword overrides fall back to the configured module values; `generate`
    and `sleep` exist so tests can run without a network or a clock.
    """
    gen = generate or _backend_generator()
    attempts_max = max(1, int(max_retries if max_retries is not None else MAX_RETRIES))
    delay = float(retry_delay_s if retry_delay_s is not None else RETRY_DELAY_S)
    mode = (indent_mode or INDENT_MODE).strip().lower()

    full_prompt = build_prompt(content, prompt, language, is_voice_prompt=is_voice_prompt)
    last_err = ""

    for attempt in range(1, attempts_max + 1):
        try:
            raw = await gen(full_prompt)
            if not isinstance(raw, str):
                raise CompletionFault("malformed response: not text")
            text = strip_code_fences(raw)
            text = reflow(text, content=content, cursor_position=cursor_position, mode=mode)
            print(f"[AI] completion ok (attempt {attempt}, {len(text)} chars)", flush=True)
            return CompletionResult(ok=True, snippet=text, attempts=attempt)
        except Exception as e:
            last_err = f"{type(e).__name__}: {e}"
            print(f"[AI] completion attempt {attempt}/{attempts_max} failed: {e!r}", flush=True)
            if attempt < attempts_max:
                await sleep(delay)

    return CompletionResult(
        ok=False,
        error=f"Unable to get AI code completion after {attempts_max} attempts ({last_err})",
        attempts=attempts_max,
    )
