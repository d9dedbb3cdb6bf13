from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fixline.core.auth import CredentialStore
from fixline.core.errors import ConfigError

DEFAULT_BASE_URL = "https://app.fixline.dev"


def _float_env(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _stored_base_url(config_dir: str) -> Optional[str]:
    """Base URL saved by ``fixline login``, if any."""
    store = CredentialStore(str(Path(config_dir) / "config.json"))
    if not store.exists():
        return None
    try:
        return store.load().get("baseUrl") or None
    except ConfigError:
        return None


@dataclass
class Settings:
    base_url: str
    api_prefix: str
    config_dir: str
    log_level: str
    log_dir: str
    data_dir: str
    project_id: str | None
    mcp_token: str | None
    host: str
    port: int
    reply_timeout: float
    poll_interval: float
    handshake_timeout: float
    disconnect_grace: float
    shutdown_grace: float
    http_timeout: float
    agent_identifier: str
    clear_logs_on_launch: bool

    @property
    def api_base(self) -> str:
        return self.base_url.rstrip("/") + self.api_prefix

    @property
    def ws_base(self) -> str:
        url = self.base_url.rstrip("/")
        if url.startswith("https://"):
            return "wss://" + url[len("https://"):]
        if url.startswith("http://"):
            return "ws://" + url[len("http://"):]
        return url

    @property
    def credentials_path(self) -> str:
        return str(Path(self.config_dir) / "config.json")

    @staticmethod
    def from_env() -> "Settings":
        default_config_dir = str(Path(os.path.expanduser("~")) / ".fixline")
        config_dir = os.getenv("FIXLINE_CONFIG_DIR") or default_config_dir
        return Settings(
            base_url=os.getenv("FIXLINE_BASE_URL") or _stored_base_url(config_dir) or DEFAULT_BASE_URL,
            api_prefix=os.getenv("FIXLINE_API_PREFIX", "/api/cli"),
            config_dir=config_dir,
            log_level=os.getenv("FIXLINE_LOG_LEVEL", "info"),
            log_dir=os.getenv("FIXLINE_LOG_DIR") or str(Path(config_dir) / ".logs"),
            data_dir=os.getenv("FIXLINE_DATA_DIR") or str(Path(config_dir) / ".data"),
            project_id=os.getenv("FIXLINE_PROJECT_ID") or None,
            mcp_token=os.getenv("FIXLINE_MCP_TOKEN") or None,
            host=os.getenv("FIXLINE_HOST", "127.0.0.1"),
            port=int(os.getenv("FIXLINE_PORT", "18791")),
            reply_timeout=_float_env("FIXLINE_REPLY_TIMEOUT", "300"),
            poll_interval=_float_env("FIXLINE_POLL_INTERVAL", "3"),
            handshake_timeout=_float_env("FIXLINE_HANDSHAKE_TIMEOUT", "15"),
            disconnect_grace=_float_env("FIXLINE_DISCONNECT_GRACE", "0.5"),
            shutdown_grace=_float_env("FIXLINE_SHUTDOWN_GRACE", "2"),
            http_timeout=_float_env("FIXLINE_HTTP_TIMEOUT", "30"),
            agent_identifier=os.getenv("FIXLINE_AGENT_IDENTIFIER", "Unknown"),
            clear_logs_on_launch=os.getenv("FIXLINE_CLEAR_LOGS_ON_LAUNCH", "false").lower() in {"1", "true", "yes"},
        )
