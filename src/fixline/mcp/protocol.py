"""MCP JSON-RPC protocol handler.

Implements the Model Context Protocol request/response cycle shared by the
HTTP endpoint and the stdio loop. Agents POST (or write) JSON-RPC requests
and get JSON-RPC responses back; tool calls are handed to the
:class:`~fixline.mcp.tools.ToolFacade`.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any

from fixline import __version__
from fixline.core.logging_config import append_to_file, get_mcp_log_path, log_mcp_call
from fixline.core.sessions import SessionRegistry
from fixline.mcp.tools import ToolFacade, ToolResult

logger = logging.getLogger("fixline.mcp.protocol")

PROTOCOL_VERSION = "2025-03-26"

# ── Tool definitions (returned by tools/list) ────────────────────

_ATTACHMENTS_SCHEMA = {
    "type": "array",
    "description": (
        "Optional file attachments (max 5). Images and PDFs as base64 (max 10MB each), "
        "text files as raw UTF-8 (max 1MB each)."
    ),
    "items": {
        "type": "object",
        "properties": {
            "fileName": {"type": "string", "description": "File name with extension, e.g. error.log"},
            "content": {"type": "string", "description": "base64 for images and PDFs, raw text otherwise"},
            "mimeType": {"type": "string", "description": "e.g. image/png, application/pdf, text/plain"},
        },
        "required": ["fileName", "content", "mimeType"],
    },
    "maxItems": 5,
}

_DECISION_DESCRIPTION = (
    "How to handle an existing active task (use with continueTaskId). "
    "'reconnect': rejoin without sending a new message. 'followup': add your message as a "
    "follow-up task linked to the existing one. 'override': close the existing task and start a new one. "
    "If an active task exists and no decision is given, the tool asks you to choose."
)

TOOLS = [
    {
        "name": "quick-query",
        "description": (
            "Ask a human engineer a focused question and wait for a single answer "
            "(1-10 budget units). Use for short, self-contained questions."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "message": {"type": "string", "description": "The question, with the context the engineer needs"},
                "maxBudgetUnits": {
                    "type": "integer",
                    "description": "Maximum budget units for this query (1-10, default 10)",
                    "default": 10,
                    "minimum": 1,
                    "maximum": 10,
                },
                "attachments": _ATTACHMENTS_SCHEMA,
                "timeoutSeconds": {
                    "type": "integer",
                    "description": "How long to wait for the answer (30-1800, default 300)",
                    "default": 300,
                    "minimum": 30,
                    "maximum": 1800,
                },
                "assignmentTimeoutSeconds": {
                    "type": "integer",
                    "description": "How long an engineer has to accept the task (30-1800)",
                    "minimum": 30,
                    "maximum": 1800,
                },
                "continueTaskId": {
                    "type": "string",
                    "description": "Task id to continue. Use it when the tool asks which active task to continue.",
                },
                "decision": {
                    "type": "string",
                    "enum": ["reconnect", "followup", "override"],
                    "description": _DECISION_DESCRIPTION,
                },
            },
            "required": ["message"],
        },
    },
    {
        "name": "extended-chat",
        "description": (
            "Start or continue a real-time debugging session with a human engineer "
            "(4-1920 budget units). This is a loop: after every engineer reply, act on it and call "
            "this tool again with continueTaskId and previouslyConnected=true. Keep going until the "
            "engineer ends the session."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "message": {
                    "type": "string",
                    "description": (
                        "First call: full problem description. Later calls: what you did in response "
                        "to the engineer and what you found."
                    ),
                },
                "maxBudgetUnits": {
                    "type": "integer",
                    "description": "Maximum budget units for the session (4-1920, default 240)",
                    "default": 240,
                    "minimum": 4,
                    "maximum": 1920,
                },
                "attachments": _ATTACHMENTS_SCHEMA,
                "assignmentTimeoutSeconds": {
                    "type": "integer",
                    "description": "How long an engineer has to accept the task (30-1800)",
                    "minimum": 30,
                    "maximum": 1800,
                },
                "continueTaskId": {
                    "type": "string",
                    "description": "Task id of the running session. Required on every call after the first.",
                },
                "decision": {
                    "type": "string",
                    "enum": ["reconnect", "followup", "override"],
                    "description": _DECISION_DESCRIPTION,
                },
                "previouslyConnected": {
                    "type": "boolean",
                    "description": "true on every call after the first, to skip the greeting",
                    "default": False,
                },
            },
            "required": ["message"],
        },
    },
    {
        "name": "listen",
        "description": (
            "Show what this server knows about engineer sessions without sending anything. "
            "Without sessionId, lists the open sessions. With sessionId, shows that task's session "
            "page, its state and the most recent messages exchanged."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "sessionId": {
                    "type": "string",
                    "description": "Task id to inspect. Omit to list open sessions.",
                },
                "verbose": {
                    "type": "boolean",
                    "description": "Include more history",
                    "default": False,
                },
            },
        },
    },
]


class MCPProtocolHandler:
    """Handles MCP JSON-RPC requests and dispatches tool calls."""

    def __init__(self, tools: ToolFacade, sessions: SessionRegistry) -> None:
        self.tools = tools
        self.sessions = sessions
        self._tool_table = {
            "quick-query": tools.quick_query,
            "extended-chat": tools.extended_chat,
            "listen": tools.listen,
        }

    def handle_request(self, body: dict[str, Any]) -> dict[str, Any]:
        """Process a single JSON-RPC request and return a JSON-RPC response.

        Notifications (no ``id``) return an empty dict.
        """
        jsonrpc = body.get("jsonrpc", "2.0")
        method = body.get("method", "")
        params = body.get("params") or {}
        req_id = body.get("id")

        logger.info("MCP request: method=%s id=%s", method, req_id)
        append_to_file(get_mcp_log_path(), f"REQUEST method={method} id={req_id}")

        try:
            result = self._dispatch(method, params)
        except Exception as exc:  # noqa: BLE001
            logger.error("MCP method %s failed: %s", method, exc)
            if req_id is None:
                return {}
            code = -32601 if isinstance(exc, LookupError) else -32603
            return self._error_response(req_id, code, str(exc))

        if req_id is None:
            return {}

        return {"jsonrpc": jsonrpc, "id": req_id, "result": result}

    def _dispatch(self, method: str, params: dict[str, Any]) -> Any:
        if method == "initialize":
            return self._handle_initialize(params)
        if method in ("initialized", "notifications/initialized"):
            return {}
        if method == "tools/list":
            return {"tools": TOOLS}
        if method == "tools/call":
            return self._handle_tools_call(params)
        if method == "ping":
            return {}
        raise LookupError(f"Unknown method: {method}")

    def _handle_initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": "fixline", "version": __version__},
        }

    def _handle_tools_call(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name", "")
        arguments = params.get("arguments") or {}
        tool = self._tool_table.get(name)
        if tool is None:
            raise LookupError(f"Unknown tool: {name}")

        logger.info("MCP tools/call: %s continueTaskId=%s", name, arguments.get("continueTaskId"))
        t0 = time.monotonic()
        result: ToolResult = tool(arguments)
        duration_ms = (time.monotonic() - t0) * 1000

        # Logging failures never turn a tool result into an error
        try:
            append_to_file(
                get_mcp_log_path(),
                f"TOOL_RESULT tool={name} ok={str(not result.is_error).lower()} "
                f"result={json.dumps(result.text)[:4000]}",
            )
            log_mcp_call(
                method="tools/call",
                tool_name=name,
                tool_args=arguments,
                result=None if result.is_error else result.text,
                error=result.text if result.is_error else None,
                duration_ms=duration_ms,
            )
        except Exception:  # noqa: BLE001
            logger.warning("Failed to log tool call %s (result still returned)", name, exc_info=True)

        return result.to_mcp()

    @staticmethod
    def _error_response(req_id: Any, code: int, message: str) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}
