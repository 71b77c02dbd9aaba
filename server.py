"""
Root shim entrypoint: forwards execution to the active runtime server.

Users should run: python server.py        (or: python server.py --smoke)
"""


from __future__ import annotations

import runpy
from pathlib import Path
import sys

HERE = Path(__file__).resolve().parent
TARGET = HERE / "runtime" / "blue" / "server.py"

if not TARGET.exists():
    raise SystemExit(f"[FATAL] Missing runtime server at: {TARGET}")

print("[BOOT] root shim ->", TARGET, flush=True)

# Bare-module imports inside the runtime (import file_store, ...) resolve from here.
sys.path.insert(0, str(TARGET.parent))

runpy.run_path(str(TARGET), run_name="__main__")
