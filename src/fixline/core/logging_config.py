"""Centralized logging configuration for fixline.

Sets up Python's logging system to write to a console stream and a
rotating log file in the configured log directory. Also provides a
dedicated JSONL logger for MCP calls.

Log directory structure::

    ~/.fixline/.logs/
    ├── fixline.log               # All Python logger output (rotating)
    ├── mcp-calls.log             # Every MCP tool call request/result (JSONL)
    ├── audit.jsonl               # Structured audit events (mirror)
    └── tasks/
        └── {task_id}/
            └── events.jsonl      # Per-task session frames (mirror)

In stdio mode stdout carries the JSON-RPC stream, so console output goes
to stderr instead.
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import sys
import time
from pathlib import Path
from typing import Any, Optional, TextIO

# Module-level log directory, set by setup_logging()
_log_dir: Optional[str] = None

mcp_call_logger = logging.getLogger("fixline._mcp_calls")

LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def get_log_dir() -> str:
    """Return the configured log directory, falling back to default."""
    if _log_dir:
        return _log_dir
    default = str(Path(os.path.expanduser("~")) / ".fixline" / ".logs")
    return os.getenv("FIXLINE_LOG_DIR", default)


def clear_logs(log_dir: str) -> None:
    """Remove ``*.log`` and ``*.jsonl`` files from the log directory.

    Called before any handlers are attached so there are no open-file
    conflicts.
    """
    if not os.path.isdir(log_dir):
        return
    for pattern in ("*.log", "*.jsonl"):
        for path in glob.glob(os.path.join(log_dir, pattern)):
            try:
                os.remove(path)
            except OSError:
                pass


def setup_logging(
    log_dir: str,
    log_level: str = "info",
    *,
    clear_on_launch: bool = False,
    stream: TextIO | None = None,
) -> None:
    """Configure the logging system with a console and a file handler.

    This should be called once at application startup. Pass
    ``stream=sys.stderr`` when stdout is reserved for protocol traffic.
    """
    global _log_dir
    _log_dir = log_dir

    if clear_on_launch:
        clear_logs(log_dir)

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(fmt)
    root.addHandler(console_handler)

    file_handler = _rotating_handler(os.path.join(log_dir, "fixline.log"), fmt)
    file_handler.setLevel(logging.DEBUG)
    root.addHandler(file_handler)

    # MCP calls go to their own JSONL file and never reach the console
    mcp_call_logger.setLevel(logging.INFO)
    mcp_call_logger.propagate = False
    mcp_call_logger.handlers.clear()
    mcp_call_logger.addHandler(
        _rotating_handler(os.path.join(log_dir, "mcp-calls.log"), logging.Formatter("%(message)s"))
    )

    # httpx logs every request at INFO; keep it out of the console
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logging.getLogger("fixline").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _rotating_handler(path: str, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
    )
    handler.setFormatter(formatter)
    return handler


def log_mcp_call(
    method: str,
    tool_name: str | None = None,
    tool_args: dict[str, Any] | None = None,
    result: Any = None,
    error: str | None = None,
    duration_ms: float | None = None,
) -> None:
    """Log an MCP JSON-RPC call to the dedicated MCP calls log."""
    record: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "method": method,
    }
    if tool_name:
        record["tool"] = tool_name
    if tool_args is not None:
        record["tool_args"] = _redact_args(tool_args)
    if duration_ms is not None:
        record["duration_ms"] = round(duration_ms, 1)
    if error:
        record["error"] = error[:5000]
    elif result is not None:
        result_str = json.dumps(result, default=str)
        if len(result_str) > 10000:
            record["result_preview"] = result_str[:10000] + "..."
        else:
            record["result"] = result
    try:
        mcp_call_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def _redact_args(args: dict[str, Any]) -> dict[str, Any]:
    """Replace attachment bodies with their sizes."""
    redacted = dict(args)
    attachments = redacted.get("attachments")
    if isinstance(attachments, list):
        redacted["attachments"] = [
            {
                "fileName": a.get("fileName"),
                "mimeType": a.get("mimeType"),
                "size": len(a.get("content") or ""),
            }
            if isinstance(a, dict) else str(a)[:100]
            for a in attachments
        ]
    return redacted


def get_task_log_dir(task_id: str) -> str:
    """Return the directory for per-task session logs."""
    d = os.path.join(get_log_dir(), "tasks", task_id)
    os.makedirs(d, exist_ok=True)
    return d


def get_mcp_log_path() -> str:
    return os.path.join(get_log_dir(), "mcp-calls.log")


def get_audit_log_path() -> str:
    """Return the path to the centralized audit JSONL log."""
    return os.path.join(get_log_dir(), "audit.jsonl")


def append_to_file(path: str, line: str) -> None:
    """Append a line to a log file, flushing immediately."""
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{line}\n")
            f.flush()
    except Exception:  # noqa: BLE001
        pass
