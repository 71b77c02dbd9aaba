# -*- coding: utf-8 -*-
"""
file_store.py

Disk-backed document store for the Codepad relay.

Contains:
- document records (one JSON file per filename) under <store>/documents/
- the append-only version log <store>/versions.jsonl
- StorageFault / NotFound

Does NOT contain:
- WebSocket / aiohttp handlers
- Server startup / routing

All functions are blocking; server-side callers run them via asyncio.to_thread.
"""

from __future__ import annotations

import json
import os
import threading
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import path_engine
from codepad_config import language_for_filename


class StorageFault(Exception):
    """Store unreachable, unreadable, or asked to write something it can't."""


class NotFound(StorageFault):
    """Referenced filename or version does not exist."""


@dataclass
class Document:
    id: str
    filename: str
    content: str
    last_modified: str
    language: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Version:
    id: str
    document_id: str
    filename: str
    content: str
    version: int
    timestamp: str

    def summary(self) -> Dict[str, Any]:
        return {"id": self.id, "version": self.version, "timestamp": self.timestamp}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -----------------------------------------------------------------------------
# Configuration (must be called by server.py)
# -----------------------------------------------------------------------------

STORE_ROOT: Optional[Path] = None
DOCUMENTS_DIR_NAME = "documents"
VERSIONS_FILE_NAME = "versions.jsonl"

# Guards count-then-append so version numbers stay unique per document.
_WRITE_LOCK = threading.Lock()


def configure(*, store_root: Path) -> None:
    global STORE_ROOT
    STORE_ROOT = Path(store_root).resolve()


def _require_configured() -> Path:
    if STORE_ROOT is None:
        raise StorageFault("file_store is not configured. Call file_store.configure(...) from server.py.")
    return STORE_ROOT


def documents_dir() -> Path:
    return _require_configured() / DOCUMENTS_DIR_NAME


def versions_path() -> Path:
    return _require_configured() / VERSIONS_FILE_NAME


def document_path(filename: str) -> Path:
    return documents_dir() / (path_engine.safe_store_name(filename) + ".json")


def ensure_store_scaffold() -> None:
    try:
        documents_dir().mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageFault(f"store unreachable: {e!r}") from e


# -----------------------------------------------------------------------------
# Small IO helpers
# -----------------------------------------------------------------------------

def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(content or "", encoding=encoding)
    os.replace(tmp, path)


def append_jsonl(path: Path, obj: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(obj, ensure_ascii=False) + "\n")


def _read_document(path: Path) -> Optional[Document]:
    if not path.exists():
        return None
    obj = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(obj, dict):
        raise StorageFault(f"corrupt document record: {path.name}")
    return Document(
        id=str(obj.get("id") or ""),
        filename=str(obj.get("filename") or ""),
        content=str(obj.get("content") or ""),
        last_modified=str(obj.get("last_modified") or ""),
        language=str(obj.get("language") or ""),
    )


def _write_document(doc: Document) -> None:
    atomic_write_text(document_path(doc.filename), json.dumps(doc.to_dict(), ensure_ascii=False, indent=2))


def _iter_versions() -> List[Version]:
    p = versions_path()
    if not p.exists():
        return []
    out: List[Version] = []
    with p.open("r", encoding="utf-8") as f:
        for ln in f:
            ln = ln.strip()
            if not ln:
                continue
            try:
                obj = json.loads(ln)
            except ValueError:
                # A torn trailing line from a crash mid-append; skip it.
                continue
            if not isinstance(obj, dict):
                continue
            out.append(
                Version(
                    id=str(obj.get("id") or ""),
                    document_id=str(obj.get("document_id") or ""),
                    filename=str(obj.get("filename") or ""),
                    content=str(obj.get("content") or ""),
                    version=int(obj.get("version") or 0),
                    timestamp=str(obj.get("timestamp") or ""),
                )
            )
    return out


def _require_document(filename: str) -> Tuple[str, Document]:
    name = path_engine.normalize_filename(filename)
    if not name:
        raise NotFound("File not found: <no filename>")
    try:
        doc = _read_document(document_path(name))
    except (OSError, ValueError) as e:
        raise StorageFault(f"store unreachable: {e!r}") from e
    if doc is None:
        raise NotFound(f"File not found: {name}")
    return name, doc


# -----------------------------------------------------------------------------
# Gateway operations
# -----------------------------------------------------------------------------

def save(filename: str, content: str, language: Optional[str] = None) -> Document:
    """
    Create the document, or snapshot its current content as the next Version
    and overwrite it.

    Version numbering runs under _WRITE_LOCK, so two saves of the same file
    can't both read the same count.
    """
    name = path_engine.normalize_filename(filename)
    if not name:
        raise StorageFault("filename is required")
    text = "" if content is None else str(content)
    lang = str(language or "").strip()

    try:
        with _WRITE_LOCK:
            existing = _read_document(document_path(name))
            now = path_engine.now_iso()

            if existing is None:
                doc = Document(
                    id=uuid.uuid4().hex,
                    filename=name,
                    content=text,
                    last_modified=now,
                    language=lang or language_for_filename(name),
                )
                _write_document(doc)
                print(f"[STORE] created {name}", flush=True)
                return doc

            prior = sum(1 for v in _iter_versions() if v.document_id == existing.id)
            snap = Version(
                id=uuid.uuid4().hex,
                document_id=existing.id,
                filename=existing.filename,
                content=existing.content,
                version=prior + 1,
                timestamp=now,
            )
            append_jsonl(versions_path(), snap.to_dict())

            existing.content = text
            existing.last_modified = now
            if lang:
                existing.language = lang
            _write_document(existing)
            print(f"[STORE] saved {name} (snapshot v{snap.version})", flush=True)
            return existing
    except (OSError, ValueError) as e:
        print(f"[STORE] save failed for {name}: {e!r}", flush=True)
        raise StorageFault(f"store unreachable: {e!r}") from e


def list_files() -> List[str]:
    """
    All filenames in directory order. Never raises: unreadable records are
    skipped, and a store that can't be read at all lists as empty.
    """
    try:
        d = documents_dir()
        if not d.exists():
            return []
        names: List[str] = []
        for p in sorted(d.glob("*.json")):
            try:
                doc = _read_document(p)
            except (OSError, ValueError, StorageFault) as e:
                print(f"[STORE] skipping unreadable record {p.name}: {e!r}", flush=True)
                continue
            if doc is not None and doc.filename:
                names.append(doc.filename)
        return names
    except Exception as e:
        print(f"[STORE] list failed: {e!r}", flush=True)
        return []


def load(filename: str) -> str:
    _, doc = _require_document(filename)
    return doc.content


def load_document(filename: str) -> Document:
    _, doc = _require_document(filename)
    return doc


def list_versions(filename: str) -> List[Dict[str, Any]]:
    """Version summaries for one document, newest first."""
    _, doc = _require_document(filename)
    try:
        mine = [v for v in _iter_versions() if v.document_id == doc.id]
    except (OSError, ValueError) as e:
        raise StorageFault(f"store unreachable: {e!r}") from e
    mine.sort(key=lambda v: v.version, reverse=True)
    return [v.summary() for v in mine]


def load_version_record(version_id: str) -> Version:
    vid = str(version_id or "").strip()
    if not vid:
        raise NotFound("Version not found: <no id>")
    try:
        for v in _iter_versions():
            if v.id == vid:
                return v
    except (OSError, ValueError) as e:
        raise StorageFault(f"store unreachable: {e!r}") from e
    raise NotFound(f"Version not found: {vid}")


def load_version(version_id: str) -> str:
    return load_version_record(version_id).content
