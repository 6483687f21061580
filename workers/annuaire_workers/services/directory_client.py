from __future__ import annotations

import logging
import ssl
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# 408 Request Timeout, 425 Too Early, 429 Too Many Requests.
TRANSIENT_STATUS_CODES = {408, 425, 429}


class DirectoryError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientDirectoryError(DirectoryError):
    """Network failure, timeout or server-side error; worth retrying."""


class PermanentDirectoryError(DirectoryError):
    """The directory rejected the entry; retrying will not help."""


def classify_response(response: httpx.Response) -> DirectoryError | None:
    if response.is_success:
        return None
    detail = _error_detail(response)
    message = f"directory returned {response.status_code}"
    if detail:
        message = f"{message}: {detail}"
    if response.status_code >= 500 or response.status_code in TRANSIENT_STATUS_CODES:
        return TransientDirectoryError(message, status_code=response.status_code)
    return PermanentDirectoryError(message, status_code=response.status_code)


class DirectoryClient:
    """Publish/unpublish contract of the national directory, over HTTPS with optional mutual TLS."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        operator_id: str = "UNKNOWN",
        timeout_seconds: float = 30.0,
        cert_path: str | None = None,
        key_path: str | None = None,
        ca_path: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-Operator-Id": operator_id}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"
        self.timeout_seconds = timeout_seconds
        self.cert_path = cert_path
        self.key_path = key_path
        self.ca_path = ca_path
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        if self.transport is not None:
            return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)
        return httpx.AsyncClient(timeout=self.timeout_seconds, verify=self._ssl_context())

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(cafile=self.ca_path)
        if self.cert_path:
            context.load_cert_chain(self.cert_path, self.key_path)
        return context

    async def publish(self, entry: dict[str, Any]) -> None:
        payload = {
            "entryType": entry["entry_type"],
            "attributes": entry["canonical_fields"],
            "contentHash": entry["content_hash"],
        }
        response = await self._send("PUT", f"/bal/{entry['entry_id']}", json=payload)
        error = classify_response(response)
        if error is not None:
            raise error

    async def unpublish(self, entry_id: str) -> None:
        response = await self._send("DELETE", f"/bal/{entry_id}")
        if response.status_code == 404:
            logger.info("entry already absent from directory entry_id=%s", entry_id)
            return
        error = classify_response(response)
        if error is not None:
            raise error

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, f"{self.base_url}{path}", headers=self.headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientDirectoryError(f"directory timeout: {exc.__class__.__name__}") from exc
        except httpx.TransportError as exc:
            raise TransientDirectoryError(f"directory transport error: {exc}") from exc


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        for key in ("message", "detail", "error"):
            value = payload.get(key)
            if isinstance(value, str):
                return value[:200]
    return ""
