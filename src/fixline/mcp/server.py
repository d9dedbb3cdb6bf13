"""HTTP MCP server (FastAPI) and the wiring shared with the stdio loop."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from fixline import __version__
from fixline.core.auth import CredentialStore, TokenManager
from fixline.core.config import Settings
from fixline.core.errors import ConfigError
from fixline.core.sessions import SessionRegistry
from fixline.core.task_events import TaskEventRegistry
from fixline.integrations.api import ApiClient
from fixline.integrations.tasks_api import ProjectsApi, TasksApi
from fixline.mcp.protocol import MCPProtocolHandler
from fixline.mcp.tools import ToolFacade

logger = logging.getLogger("fixline.mcp.server")


@dataclass
class Runtime:
    settings: Settings
    client: ApiClient
    sessions: SessionRegistry
    handler: MCPProtocolHandler

    def shutdown(self) -> None:
        self.sessions.close_all(grace=self.settings.shutdown_grace)
        self.client.close()


def build_runtime(settings: Settings) -> Runtime:
    store = CredentialStore(settings.credentials_path)
    tokens = TokenManager(store, settings.api_base, timeout=settings.http_timeout)
    client = ApiClient(settings.api_base, tokens.get_valid_token, timeout=settings.http_timeout)
    tasks_api = TasksApi(client, base_url=settings.base_url, agent_identifier=settings.agent_identifier)

    project_id = settings.project_id
    if not project_id:
        try:
            project_id = store.default_project_id()
        except ConfigError as exc:
            logger.warning("Could not read default project from %s: %s", store.path, exc)

    sessions = SessionRegistry()
    tools = ToolFacade(
        tasks_api,
        ProjectsApi(client),
        sessions,
        token_provider=tokens.get_valid_token,
        ws_base=settings.ws_base,
        project_id=project_id,
        data_dir=settings.data_dir,
        reply_timeout=settings.reply_timeout,
        poll_interval=settings.poll_interval,
        handshake_timeout=settings.handshake_timeout,
        disconnect_grace=settings.disconnect_grace,
        event_registry=TaskEventRegistry(),
    )
    return Runtime(settings=settings, client=client, sessions=sessions, handler=MCPProtocolHandler(tools, sessions))


class HealthResponse(BaseModel):
    status: str
    version: str
    sessions: int


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    if runtime is None:
        runtime = build_runtime(settings or Settings.from_env())
    settings = runtime.settings

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        logger.info("MCP server ready (api=%s)", settings.api_base)
        yield
        logger.info("Shutting down, closing open sessions")
        await run_in_threadpool(runtime.shutdown)

    app = FastAPI(title="fixline", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    def _check_token(request: Request) -> None:
        if not settings.mcp_token:
            return
        token = request.headers.get("x-mcp-token")
        auth = request.headers.get("authorization", "")
        if not token and auth.lower().startswith("bearer "):
            token = auth.split(" ", 1)[1]
        if token != settings.mcp_token:
            raise HTTPException(status_code=401, detail="Invalid MCP token")

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(status="ok", version=__version__, sessions=len(runtime.sessions.list()))

    @app.get("/sessions")
    def sessions(request: Request) -> dict[str, Any]:
        _check_token(request)
        return {"sessions": runtime.sessions.summary()}

    @app.post("/mcp")
    async def mcp_jsonrpc(request: Request) -> dict:
        """MCP JSON-RPC endpoint. Tool calls block until the engineer replies, so they run off the event loop."""
        _check_token(request)
        try:
            body = await request.json()
        except ValueError:
            return MCPProtocolHandler._error_response(None, -32700, "Parse error")
        if not isinstance(body, dict):
            return MCPProtocolHandler._error_response(None, -32600, "Invalid request")
        return await run_in_threadpool(runtime.handler.handle_request, body)

    return app
