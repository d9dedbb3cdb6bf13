"""Credential file storage and access-token refresh.

The credentials file (``~/.fixline/config.json``) mirrors what the login
flow writes::

    {
      "baseUrl": "https://app.fixline.dev",
      "auth": {"accessToken": "...", "refreshToken": "...",
               "expiresAt": "2026-10-20T12:00:00+00:00", "userId": "42"},
      "defaults": {"projectId": "7"}
    }
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
import logging
import os
import threading
from typing import Any, Dict, Optional

import httpx
import jwt

from fixline.core.errors import AuthenticationError, ConfigError

logger = logging.getLogger("fixline.auth")

# Refresh when the token expires within this window
REFRESH_THRESHOLD = timedelta(hours=1)
DEFAULT_TOKEN_LIFETIME_SECONDS = 86400


@dataclass
class AuthState:
    access_token: str
    refresh_token: str = ""
    expires_at: Optional[datetime] = None
    user_id: str = ""

    def to_dict(self) -> dict:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "userId": self.user_id,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "AuthState":
        token = d.get("accessToken", "")
        expires_at = _parse_expiry(d.get("expiresAt")) or _expiry_from_jwt(token)
        return cls(
            access_token=token,
            refresh_token=d.get("refreshToken", ""),
            expires_at=expires_at,
            user_id=str(d.get("userId", "")),
        )


def _parse_expiry(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _expiry_from_jwt(token: str) -> Optional[datetime]:
    """Read the ``exp`` claim without verifying the signature (the backend verifies)."""
    if not token or token.count(".") != 2:
        return None
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    if exp is None:
        return None
    return datetime.fromtimestamp(int(exp), tz=timezone.utc)


class CredentialStore:
    """JSON-file backed store for the base URL, tokens and default project."""

    def __init__(self, store_path: str) -> None:
        self._store_path = store_path
        self._lock = threading.Lock()

    @property
    def path(self) -> str:
        return self._store_path

    def exists(self) -> bool:
        return os.path.exists(self._store_path)

    def load(self) -> Dict[str, Any]:
        if not self.exists():
            raise ConfigError("Configuration file not found. Run: fixline login")
        try:
            with open(self._store_path, "r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Failed to load config: {exc}") from exc

    def save(self, data: Dict[str, Any]) -> None:
        with self._lock:
            dir_path = os.path.dirname(self._store_path)
            if dir_path:
                os.makedirs(dir_path, mode=0o700, exist_ok=True)
            fd = os.open(self._store_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)

    def load_auth(self) -> Optional[AuthState]:
        raw = self.load().get("auth")
        if not raw or not raw.get("accessToken"):
            return None
        return AuthState.from_dict(raw)

    def update_auth(self, auth: AuthState) -> None:
        data = self.load() if self.exists() else {}
        data["auth"] = auth.to_dict()
        self.save(data)

    def default_project_id(self) -> Optional[str]:
        if not self.exists():
            return None
        project_id = (self.load().get("defaults") or {}).get("projectId")
        return str(project_id) if project_id else None


class TokenManager:
    """Hands out a valid bearer token, refreshing it shortly before expiry."""

    def __init__(
        self,
        store: CredentialStore,
        api_base: str,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.store = store
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._lock = threading.Lock()

    def get_valid_token(self) -> str:
        with self._lock:
            auth = self.store.load_auth()
            if auth is None:
                raise AuthenticationError("Not authenticated. Run: fixline login", status_code=401)
            if auth.expires_at is not None:
                remaining = auth.expires_at - datetime.now(timezone.utc)
                if remaining < REFRESH_THRESHOLD:
                    logger.info("Token expiring soon (expires_at=%s), refreshing", auth.expires_at.isoformat())
                    auth = self._refresh(auth)
            return auth.access_token

    def _refresh(self, auth: AuthState) -> AuthState:
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(
                    f"{self.api_base}/auth/refresh",
                    headers={"Authorization": f"Bearer {auth.access_token}"},
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Token refresh failed: %s", exc)
            raise AuthenticationError(
                "Token refresh failed. Please re-authenticate: fixline login", status_code=401
            ) from exc

        if not data.get("success", True) or not data.get("token"):
            raise AuthenticationError("Token refresh returned no token. Please re-authenticate: fixline login")

        lifetime = int(data.get("expiresIn") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        refreshed = AuthState(
            access_token=data["token"],
            refresh_token=auth.refresh_token or data["token"],
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=lifetime),
            user_id=auth.user_id,
        )
        self.store.update_auth(refreshed)
        logger.info("Token refreshed successfully")
        return refreshed
