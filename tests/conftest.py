from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from graphkeeper.config import ChatModelConfig, EmbeddingModelConfig, ProviderConfig, Settings
from graphkeeper.notifications import LogNotifier, TimerRegistry
from graphkeeper.runtime import GraphKeeper
from graphkeeper.supervisor import ProcessSupervisor


class FakeBackend:
    """In-memory stand-in for the knowledge server's REST surface."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.healthy = True
        self.health_delay = 0.0
        self.offline = False
        self.query_failures = 0
        self.query_status = 200
        self.query_payload: Any = {
            "response": "Alpha relates to beta.",
            "references": [
                {"reference_id": "1", "file_path": "notes/alpha.md", "content": ["Alpha text."]},
                {"reference_id": "2", "file_path": "notes/beta.md"},
            ],
        }
        self.insert_status = 200
        self.statuses: list[dict[str, Any]] = [{"busy": False}]
        self.status_failures = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._async_handler)

    def calls(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    async def _async_handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health" and self.health_delay:
            await asyncio.sleep(self.health_delay)
        return self.handler(request)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if self.offline:
            raise httpx.ConnectError("connection refused", request=request)

        if path == "/health":
            return httpx.Response(200 if self.healthy else 503, json={"status": "healthy"})

        if path == "/query":
            if self.query_failures > 0:
                self.query_failures -= 1
                raise httpx.ConnectError("connection refused", request=request)
            if self.query_status != 200:
                return httpx.Response(self.query_status, text="query exploded")
            if isinstance(self.query_payload, str):
                return httpx.Response(200, text=self.query_payload)
            return httpx.Response(200, json=self.query_payload)

        if path == "/documents/texts":
            return httpx.Response(self.insert_status, json={"status": "success"})

        if path == "/documents/upload":
            return httpx.Response(self.insert_status, json={"status": "success"})

        if path == "/documents/pipeline_status":
            if self.status_failures > 0:
                self.status_failures -= 1
                raise httpx.ReadTimeout("timed out", request=request)
            payload = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return httpx.Response(200, json=payload)

        return httpx.Response(404, json={"detail": "not found"})

    @staticmethod
    def json_body(request: httpx.Request) -> Any:
        return json.loads(request.content.decode("utf-8"))


class FakeRestarter:
    def __init__(self, backend: FakeBackend | None = None, *, revive: bool = True) -> None:
        self.backend = backend
        self.revive = revive
        self.calls = 0

    async def restart(self) -> None:
        self.calls += 1
        if self.backend is not None and self.revive:
            self.backend.offline = False
            self.backend.query_failures = 0


class RecordingReaper:
    def __init__(self) -> None:
        self.async_calls: list[str] = []
        self.sync_calls: list[str] = []

    async def reap(self, command: str) -> None:
        self.async_calls.append(command)

    def reap_sync(self, command: str) -> None:
        self.sync_calls.append(command)


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def notifier() -> LogNotifier:
    return LogNotifier()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    work_dir = tmp_path / "rag"
    docs = tmp_path / "docs"
    docs.mkdir()
    return Settings(
        providers=(
            ProviderConfig(id="openai", base_url="https://api.openai.com/v1", api_key="sk-test"),
            ProviderConfig(id="ollama", base_url="http://localhost:11434"),
        ),
        chat_models=(ChatModelConfig(id="gpt", provider_id="openai", model="gpt-4o-mini"),),
        embedding_models=(
            EmbeddingModelConfig(id="embed", provider_id="openai", model="text-embedding-3-small", dimension=1536),
        ),
        chat_model_id="gpt",
        embedding_model_id="embed",
        lightrag_work_dir=str(work_dir),
        document_root=str(docs),
        metrics_enabled=False,
    )


@pytest.fixture()
def reaper() -> RecordingReaper:
    return RecordingReaper()


@pytest.fixture()
def keeper(settings: Settings, backend: FakeBackend, notifier: LogNotifier, reaper: RecordingReaper) -> GraphKeeper:
    timers = TimerRegistry()
    supervisor = ProcessSupervisor(
        settings,
        notifier=notifier,
        timers=timers,
        transport=backend.transport,
        reaper=reaper.reap,
        sync_reaper=reaper.reap_sync,
    )
    return GraphKeeper(
        settings,
        notifier=notifier,
        timers=timers,
        transport=backend.transport,
        supervisor=supervisor,
    )
