"""MCP over stdio: newline-delimited JSON-RPC on stdin/stdout.

Each request is handled on its own thread so a long ``extended-chat`` wait
does not hold up ``ping`` or a call for a different task. Responses are
written whole, one per line, under a lock.
"""
from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from typing import Any, Optional, TextIO

from fixline.mcp.protocol import MCPProtocolHandler
from fixline.mcp.server import Runtime

logger = logging.getLogger("fixline.mcp.stdio")


class StdioServer:
    def __init__(
        self,
        handler: MCPProtocolHandler,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None,
    ) -> None:
        self.handler = handler
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self._write_lock = threading.Lock()
        self._workers: list[threading.Thread] = []

    def write(self, message: dict[str, Any]) -> None:
        line = json.dumps(message, default=str)
        with self._write_lock:
            self.stdout.write(line + "\n")
            self.stdout.flush()

    def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            body = json.loads(line)
        except ValueError:
            logger.warning("Ignoring unparseable stdin line: %s", line[:200])
            self.write(MCPProtocolHandler._error_response(None, -32700, "Parse error"))
            return
        if not isinstance(body, dict):
            self.write(MCPProtocolHandler._error_response(None, -32600, "Invalid request"))
            return
        response = self.handler.handle_request(body)
        if response:
            self.write(response)

    def serve_forever(self, *, wait: bool = True) -> None:
        """Read requests until EOF; with ``wait`` join in-flight requests before returning."""
        logger.info("stdio MCP server reading requests")
        for line in self.stdin:
            worker = threading.Thread(target=self.handle_line, args=(line,), daemon=True, name="stdio-request")
            worker.start()
            self._workers = [w for w in self._workers if w.is_alive()]
            self._workers.append(worker)
        logger.info("stdin closed")
        if wait:
            for worker in self._workers:
                worker.join()


def run_stdio(runtime: Runtime) -> None:
    """Serve MCP on stdin/stdout until EOF or a termination signal."""
    server = StdioServer(runtime.handler)
    stopping = threading.Event()

    def _shutdown(signum: int, frame: Any) -> None:
        if stopping.is_set():
            return
        stopping.set()
        logger.info("Received signal %s, closing open sessions", signum)
        runtime.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        server.serve_forever(wait=False)
    finally:
        if not stopping.is_set():
            stopping.set()
            runtime.shutdown()
