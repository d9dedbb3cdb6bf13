"""Append-only audit trail for server-mutating calls (create, override, follow-up, cancel)."""
from __future__ import annotations

from datetime import datetime
import json
import logging
import os
from typing import Any, Dict, Optional

from fixline.core.logging_config import append_to_file, get_audit_log_path

logger = logging.getLogger("fixline.audit")


def log_event(
    data_dir: Optional[str],
    event_type: str,
    payload: Dict[str, Any],
) -> None:
    """Record an audit event. Never raises; audit is not allowed to fail a tool call."""
    record: Dict[str, Any] = {
        "ts": datetime.utcnow().isoformat() + "Z",
        "type": event_type,
        "payload": payload,
    }
    line = json.dumps(record, default=str)
    path = None
    if data_dir:
        path = os.path.join(data_dir, "audit.jsonl")
        try:
            os.makedirs(data_dir, exist_ok=True)
            with open(path, "a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            logger.warning("Failed to write audit event %s: %s", event_type, exc)
    central = get_audit_log_path()
    if central != path:
        append_to_file(central, line)


def read_events(data_dir: str, limit: int = 100) -> list[dict]:
    path = os.path.join(data_dir, "audit.jsonl")
    if not os.path.exists(path):
        return []
    events: list[dict] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                events.append(json.loads(line))
    return events[-limit:]
