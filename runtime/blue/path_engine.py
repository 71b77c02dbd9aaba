# -*- coding: utf-8 -*-
"""
Path / naming safety helpers for the file store.
"""

from __future__ import annotations

import hashlib
import re
import time


def normalize_filename(name: str) -> str:
    """
    Canonical document identity: trimmed, forward slashes.
    Empty string means "no filename".
    """
    return str(name or "").strip().replace("\\", "/")


def safe_store_name(filename: str) -> str:
    """
    On-disk stem for a document record.

    Different filenames can sanitize to the same stem ("a b.py" / "a_b.py"),
    so a short hash of the canonical filename keeps them apart.
    """
    canon = normalize_filename(filename)
    base = canon.split("/")[-1]
    base = re.sub(r"[^a-zA-Z0-9_.-]", "_", base).strip(".") or "file"
    digest = hashlib.sha256(canon.encode("utf-8")).hexdigest()[:8]
    return f"{base[:80]}-{digest}"


def now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
