"""
Per-run JSONL log of deployments.

    <base_dir>/<run_id>/
        run_metadata.json    one JSON document describing the run
        events.jsonl         {"t": <unix seconds>, "event": <name>, ...} per line
        deployments.jsonl    one row per finished deployment, success or failure
        .hostname            host that wrote the run
"""

from __future__ import annotations

import json
import os
import re
import secrets
import socket
import time
from dataclasses import dataclass
from pathlib import Path

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")


def _safe_filename(s: str) -> str:
    return _UNSAFE_CHARS_RE.sub("_", s)[:120]


def default_run_id(*, prefix: str) -> str:
    """`<prefix>_<UTC timestamp>_pid<pid>_<6 hex chars>`; unique across concurrent runs."""
    stamp = time.strftime("%Y%m%d_%H%M%S", time.gmtime())
    return f"{prefix}_{stamp}_pid{os.getpid()}_{secrets.token_hex(3)}"


def _append_jsonl(path: Path, row: dict) -> None:
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(row, sort_keys=True, default=str) + "\n")


@dataclass(frozen=True)
class JsonlPaths:
    root: Path
    run_metadata: Path
    events: Path
    deployments: Path


class JsonlLogger:
    def __init__(self, *, base_dir: Path, run_id: str) -> None:
        root = Path(base_dir) / _safe_filename(run_id)
        root.mkdir(parents=True, exist_ok=True)
        self.paths = JsonlPaths(
            root=root,
            run_metadata=root / "run_metadata.json",
            events=root / "events.jsonl",
            deployments=root / "deployments.jsonl",
        )
        (root / ".hostname").write_text(socket.gethostname(), encoding="utf-8")

    def write_run_metadata(self, obj: dict) -> None:
        self.paths.run_metadata.write_text(json.dumps(obj, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    def event(self, name: str, **fields: object) -> None:
        _append_jsonl(self.paths.events, {"t": int(time.time()), "event": name, **fields})

    def deployment_row(self, row: dict) -> None:
        _append_jsonl(self.paths.deployments, row)
