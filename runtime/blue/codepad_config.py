# -*- coding: utf-8 -*-
"""
Codepad config primitives (pure constants + pure helpers).

Hard rules:
- This module must NOT import server.py (no circular imports).
- Keep it stdlib-only.
"""

from __future__ import annotations


# Inbound frame tags (client -> server)
MSG_UPDATE_TEXT = "UPDATE_TEXT"
MSG_SAVE_FILE = "SAVE_FILE"
MSG_GET_FILES = "GET_FILES"
MSG_LOAD_FILE = "LOAD_FILE"
MSG_LOAD_VERSION = "LOAD_VERSION"
MSG_AI_CODE_COMPLETION = "AI_CODE_COMPLETION"
MSG_PING = "PING"

INBOUND_TYPES = (
    MSG_UPDATE_TEXT,
    MSG_SAVE_FILE,
    MSG_GET_FILES,
    MSG_LOAD_FILE,
    MSG_LOAD_VERSION,
    MSG_AI_CODE_COMPLETION,
    MSG_PING,
)

# Outbound frame tags (server -> client)
OUT_TEXT_UPDATED = "TEXT_UPDATED"
OUT_FILE_SAVED = "FILE_SAVED"
OUT_FILE_LIST = "FILE_LIST"
OUT_FILE_LOADED = "FILE_LOADED"
OUT_FILE_VERSIONS = "FILE_VERSIONS"
OUT_AI_CODE_COMPLETION = "AI_CODE_COMPLETION"
OUT_ERROR = "ERROR"

DEFAULT_LANGUAGE = "java"

LANGUAGE_BY_SUFFIX = {
    ".java": "java",
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".kt": "kotlin",
    ".swift": "swift",
    ".html": "html",
    ".htm": "html",
    ".css": "css",
    ".json": "json",
    ".md": "markdown",
    ".yml": "yaml",
    ".yaml": "yaml",
}

INDENT_MODES = ("cursor", "baseline", "none")
COMPLETION_BACKENDS = ("ollama", "openai")

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "llama3.2"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_S = 1.0


def language_for_filename(filename: str) -> str:
    name = (filename or "").strip().lower()
    dot = name.rfind(".")
    if dot <= 0:
        return DEFAULT_LANGUAGE
    return LANGUAGE_BY_SUFFIX.get(name[dot:], DEFAULT_LANGUAGE)


def env_flag(value: str) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")
