"""Authenticated HTTP client for the backend REST API."""
from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import httpx

from fixline.core.errors import AuthenticationError, UpstreamError

logger = logging.getLogger("fixline.api")


class ApiClient:
    """Thin wrapper over ``httpx.Client`` that adds the bearer token and
    turns every failure into an :class:`UpstreamError`.

    The backend wraps payloads as ``{"success": bool, "data": ..., "error": str,
    "warning": str}``; :meth:`request` returns the unwrapped ``data`` (or the
    whole body when there is no envelope). Callers that need the warning use
    :meth:`request_with_warning`, which returns it alongside the data.
    """

    def __init__(
        self,
        api_base: str,
        token_provider: Callable[[], str],
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self._token_provider = token_provider
        self._client = httpx.Client(
            base_url=self.api_base,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def request(self, method: str, path: str, json: Any = None) -> Any:
        return self.request_with_warning(method, path, json)[0]

    def request_with_warning(self, method: str, path: str, json: Any = None) -> tuple[Any, Optional[str]]:
        url = path if path.startswith("/") else f"/{path}"
        headers = {"Authorization": f"Bearer {self._token_provider()}"}
        logger.debug("API request: %s %s", method, url)
        try:
            resp = self._client.request(method, url, json=json, headers=headers)
        except httpx.RequestError as exc:
            logger.error("API request error: %s %s: %s", method, url, exc)
            raise UpstreamError(f"Request to {url} failed: {exc}") from exc

        try:
            body = resp.json()
        except ValueError:
            body = {"error": resp.text[:500]}

        if resp.status_code == 401:
            raise AuthenticationError(
                "Authentication failed. Please run: fixline login",
                status_code=401,
                details=body if isinstance(body, dict) else {},
            )
        if resp.status_code >= 400:
            detail = body.get("error") or body.get("detail") if isinstance(body, dict) else None
            logger.warning("API request failed: %s %s status=%s error=%s", method, url, resp.status_code, detail)
            raise UpstreamError(
                f"{detail or 'Request failed'} (HTTP {resp.status_code})",
                status_code=resp.status_code,
                details=body if isinstance(body, dict) else {},
            )

        return self._unwrap(body, url)

    def _unwrap(self, body: Any, url: str) -> tuple[Any, Optional[str]]:
        if not isinstance(body, dict) or "success" not in body:
            return body, None
        if not body.get("success"):
            raise UpstreamError(body.get("error") or f"Request to {url} failed", details=body)
        warning = body.get("warning")
        if "data" in body:
            return body["data"], warning
        return {k: v for k, v in body.items() if k not in ("success", "warning", "error")}, warning

    def get(self, path: str) -> Any:
        return self.request("GET", path)

    def post(self, path: str, body: Any = None) -> Any:
        return self.request("POST", path, json=body)
