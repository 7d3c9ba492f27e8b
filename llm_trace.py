"""Per-turn trace files for the provider calls behind /api/chat.

Each event is its own JSON file, grouped by UTC day and turn id:

    <data_dir>/llm_traces/<YYYY-MM-DD>/<turn_id>/<HHMMSS.mmm>_<stage>_<id>.json

Day directories older than the retention window are removed while writing.
Tracing never raises into the request path; a failed write returns None.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import threading
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

TRACE_DIRNAME = "llm_traces"
DATA_URI_KEEP = 64  # chars of a data: URI kept in a trace
PRUNE_EVERY = 600  # seconds between retention sweeps per root

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_.-]+")

_sweep_lock = threading.Lock()
_last_sweep: dict[str, float] = {}


def new_turn_id() -> str:
    return "turn_" + uuid.uuid4().hex[:12]


def _path_token(value: str | None, fallback: str) -> str:
    cleaned = _UNSAFE_RE.sub("_", (value or "").strip()).strip("._-")
    return cleaned or fallback


def _shorten_data_uris(value: Any) -> Any:
    """Audio and inline images are large; keep only a recognizable prefix."""
    if isinstance(value, str):
        if value.startswith("data:") and len(value) > DATA_URI_KEEP:
            return f"{value[:DATA_URI_KEEP]}...({len(value)} chars)"
        return value
    if isinstance(value, dict):
        return {k: _shorten_data_uris(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_shorten_data_uris(v) for v in value]
    return value


def prune_traces(root: str, retention_days: int, today: date) -> list[str]:
    """Delete day directories older than ``retention_days``. Returns removed names."""
    if retention_days <= 0 or not os.path.isdir(root):
        return []
    cutoff = today - timedelta(days=retention_days)
    removed = []
    for name in sorted(os.listdir(root)):
        path = os.path.join(root, name)
        if not os.path.isdir(path):
            continue
        try:
            day = datetime.strptime(name, "%Y-%m-%d").date()
        except ValueError:
            continue
        if day < cutoff:
            shutil.rmtree(path, ignore_errors=True)
            removed.append(name)
    return removed


def _sweep_if_due(root: str, retention_days: int, now: datetime):
    with _sweep_lock:
        if now.timestamp() - _last_sweep.get(root, 0.0) < PRUNE_EVERY:
            return
        _last_sweep[root] = now.timestamp()
    prune_traces(root, retention_days, now.date())


def write_trace(
    *,
    data_dir: str,
    turn_id: str,
    stage: str,
    payload: Any,
    tags: dict | None = None,
    source: str = "",
    retention_days: int = 14,
    now_utc: datetime | None = None,
) -> str | None:
    """Write one trace event and return the file path, or None when skipped."""
    if not data_dir or not turn_id or not stage:
        return None

    now = now_utc or datetime.now(timezone.utc)
    root = os.path.join(data_dir, TRACE_DIRNAME)
    _sweep_if_due(root, retention_days, now)

    turn_dir = os.path.join(root, now.strftime("%Y-%m-%d"), _path_token(turn_id, "turn"))
    file_name = "{}_{}_{}.json".format(
        now.strftime("%H%M%S.%f")[:-3], _path_token(stage, "stage"), uuid.uuid4().hex[:8],
    )
    path = os.path.join(turn_dir, file_name)

    event = {
        "schema_version": 1,
        "created_at": now.isoformat(),
        "turn_id": turn_id,
        "stage": stage,
        "source": source,
        "tags": tags or {},
        "payload": _shorten_data_uris(payload),
    }
    try:
        os.makedirs(turn_dir, exist_ok=True)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(event, f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)
    except OSError:
        return None
    return path
