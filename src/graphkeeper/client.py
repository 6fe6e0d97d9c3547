"""Async HTTP client for the knowledge server's REST surface."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Final

import httpx

from .config import Settings
from .errors import BackendError, TransportError

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: Final[float] = 120.0
_HEALTH_TIMEOUT: Final[float] = 1.0
_ERROR_DETAIL_LIMIT: Final[int] = 500


@dataclass(slots=True, frozen=True)
class PipelineStatus:
    """Snapshot of ``/documents/pipeline_status``."""

    busy: bool = False
    cur_batch: int = 0
    batchs: int = 0
    latest_message: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "PipelineStatus":
        if not isinstance(payload, dict):
            return cls()

        def _as_int(value: Any) -> int:
            try:
                return int(value)
            except (TypeError, ValueError):
                return 0

        return cls(
            busy=bool(payload.get("busy", False)),
            cur_batch=_as_int(payload.get("cur_batch")),
            batchs=_as_int(payload.get("batchs")),
            latest_message=str(payload.get("latest_message") or ""),
        )

    @property
    def percent(self) -> int:
        if self.batchs <= 0:
            return 0
        return round(self.cur_batch / self.batchs * 100)


class BackendClient:
    """Thin wrapper over the backend endpoints.

    Every request method raises :class:`TransportError` when the server cannot
    be reached and :class:`BackendError` for non-2xx answers. ``health`` is the
    exception and only ever returns a boolean.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "BackendClient":
        return cls(settings.base_url, transport=transport)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def health(self, timeout: float = _HEALTH_TIMEOUT) -> bool:
        try:
            response = await asyncio.wait_for(self._client.get("/health", timeout=timeout), timeout)
        except (asyncio.TimeoutError, httpx.HTTPError) as exc:
            logger.debug("backend.health.unreachable url=%s error=%s", self._base_url, exc)
            return False
        return response.is_success

    async def insert_text(self, text: str, source: str) -> Any:
        payload = {"texts": [text], "file_sources": [source]}
        response = await self._request("POST", "/documents/texts", json=payload)
        return self._decode(response)

    async def upload_file(self, filename: str, data: bytes, content_type: str | None = None) -> Any:
        files = {"file": (filename, data, content_type or "application/octet-stream")}
        response = await self._request("POST", "/documents/upload", files=files)
        return self._decode(response)

    async def query(self, text: str, *, mode: str = "hybrid") -> Any:
        payload = {
            "query": text,
            "mode": mode,
            "stream": False,
            "only_need_context": False,
        }
        response = await self._request("POST", "/query", json=payload)
        return self._decode(response)

    async def pipeline_status(self) -> PipelineStatus:
        response = await self._request("GET", "/documents/pipeline_status")
        return PipelineStatus.from_payload(self._decode(response))

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc!r}") from exc
        if not response.is_success:
            detail = response.text[:_ERROR_DETAIL_LIMIT]
            raise BackendError(response.status_code, detail)
        return response

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text


__all__ = ["BackendClient", "PipelineStatus"]
