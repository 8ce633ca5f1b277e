from __future__ import annotations
import hashlib
import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..utils.paths import audit_file

"""
Audit trail for executed tasks.
Writes JSON lines to <log_dir>/audit/YYYY/MM/DD/tasks.jsonl with a
tamper-evident hash chain per file (prev_hash -> hash). Only sizes of task
output are recorded, never the output itself.
"""


def _last_hash(path: str) -> Optional[str]:
    if not os.path.exists(path):
        return None
    last = None
    with open(path, "rb") as f:
        for line in f:
            if line.strip():
                last = line
    if not last:
        return None
    try:
        return json.loads(last.decode("utf-8")).get("hash")
    except ValueError:
        return None


def write_task_audit(
    task_id: str,
    kind: str,
    ok: bool,
    duration_ms: int,
    error_code: Optional[str] = None,
    **extra: Any,
) -> str:
    now = datetime.now(timezone.utc)
    path = audit_file(now.date())
    rec: Dict[str, Any] = {
        "ts": now.isoformat(),
        "task_id": task_id,
        "kind": kind,
        "ok": ok,
        "duration_ms": duration_ms,
        "error_code": error_code,
    }
    rec.update(extra)
    prev_hash = _last_hash(path)
    rec["prev_hash"] = prev_hash
    h = hashlib.sha256()
    if prev_hash:
        h.update(prev_hash.encode("utf-8"))
    h.update(json.dumps(rec, sort_keys=True, ensure_ascii=False, default=str).encode("utf-8"))
    rec["hash"] = h.hexdigest()
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(rec, ensure_ascii=False, default=str) + "\n")
    return path


def verify_chain(path: str) -> bool:
    """Recompute every hash in an audit file; False on the first broken link."""
    prev = None
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            rec = json.loads(line)
            stored = rec.pop("hash", None)
            if rec.get("prev_hash") != prev:
                return False
            h = hashlib.sha256()
            if prev:
                h.update(prev.encode("utf-8"))
            h.update(json.dumps(rec, sort_keys=True, ensure_ascii=False, default=str).encode("utf-8"))
            if h.hexdigest() != stored:
                return False
            prev = stored
    return True
