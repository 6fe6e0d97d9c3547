from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from graphkeeper.client import BackendClient
from graphkeeper.config import Settings
from graphkeeper.observability import MetricsRecorder
from graphkeeper.query import (
    GRAPH_MASTER,
    GRAPH_OFFLINE,
    GRAPH_REFERENCE,
    LOCAL_FILE,
    QUERYING,
    QUERYING_DONE,
    QueryEngine,
    QueryProgress,
    QueryScope,
)

from conftest import FakeRestarter


@pytest_asyncio.fixture()
async def client(backend):
    client = BackendClient("http://localhost:9621", transport=backend.transport)
    yield client
    await client.aclose()


def _engine(settings: Settings, client: BackendClient, restarter: FakeRestarter, notifier=None) -> QueryEngine:
    return QueryEngine(settings, lambda: client, restarter=restarter, notifier=notifier, settle_delay=0.0)


@pytest.mark.asyncio
async def test_global_query_builds_master_and_references(settings: Settings, backend, client) -> None:
    progress: list[QueryProgress] = []

    results = await _engine(settings, client, FakeRestarter()).process_query("alpha?", on_progress=progress.append)

    assert [result.model for result in results] == [GRAPH_MASTER, GRAPH_REFERENCE, GRAPH_REFERENCE]
    master = results[0]
    assert master.id == -1
    assert master.similarity == 1.0
    assert master.content == (
        "Alpha relates to beta.\n\n### References\n[1] notes/alpha.md\n[2] notes/beta.md"
    )
    assert [result.id for result in results[1:]] == [-2, -3]
    assert [result.path for result in results[1:]] == ["notes/alpha.md", "notes/beta.md"]
    assert all(result.similarity == 0.5 for result in results[1:])
    assert "Alpha text." in results[1].content
    assert progress == [QUERYING, QUERYING_DONE]


@pytest.mark.asyncio
async def test_citations_can_be_disabled(settings: Settings, client) -> None:
    settings = settings.with_updates(lightrag_show_citations=False)

    results = await _engine(settings, client, FakeRestarter()).process_query("alpha?")

    assert results[0].content == "Alpha relates to beta."
    assert len(results) == 3


@pytest.mark.asyncio
async def test_plain_string_answer_has_no_references(settings: Settings, backend, client) -> None:
    backend.query_payload = "Only text."

    results = await _engine(settings, client, FakeRestarter()).process_query("q")

    assert len(results) == 1
    assert results[0].content == "Only text."


@pytest.mark.asyncio
async def test_failed_query_recovers_after_one_restart(settings: Settings, backend, client, notifier) -> None:
    settings = settings.with_updates(enable_auto_start_server=True)
    backend.query_failures = 1
    restarter = FakeRestarter(backend)

    results = await _engine(settings, client, restarter, notifier).process_query("alpha?")

    assert restarter.calls == 1
    assert len(backend.calls("/query")) == 2
    assert results[0].model == GRAPH_MASTER
    assert any("Waking the knowledge backend" in message for message in notifier.history)


@pytest.mark.asyncio
async def test_terminal_failure_yields_single_offline_entry(settings: Settings, backend, client) -> None:
    settings = settings.with_updates(enable_auto_start_server=True)
    backend.offline = True
    restarter = FakeRestarter(backend, revive=False)
    progress: list[QueryProgress] = []

    results = await _engine(settings, client, restarter).process_query("alpha?", on_progress=progress.append)

    assert restarter.calls == 1
    assert len(backend.calls("/query")) == 2
    assert len(results) == 1
    assert results[0].model == GRAPH_OFFLINE
    assert results[0].id == -2
    assert "restart was attempted" in results[0].content
    assert progress == [QUERYING, QUERYING_DONE]


@pytest.mark.asyncio
async def test_no_recovery_when_auto_start_disabled(settings: Settings, backend, client) -> None:
    backend.query_status = 500
    restarter = FakeRestarter(backend)

    results = await _engine(settings, client, restarter).process_query("alpha?")

    assert restarter.calls == 0
    assert len(backend.calls("/query")) == 1
    assert [result.model for result in results] == [GRAPH_OFFLINE]
    assert "HTTP 500" in results[0].content


@pytest.mark.asyncio
async def test_scoped_query_reads_files_without_network(settings: Settings, backend, client) -> None:
    root = Path(settings.document_root)
    (root / "a.md").write_text("Alpha", encoding="utf-8")
    (root / "b.md").write_text("Beta", encoding="utf-8")
    restarter = FakeRestarter()
    progress: list[QueryProgress] = []

    results = await _engine(settings, client, restarter).process_query(
        "ignored",
        QueryScope.of(files=["a.md", "b.md", "missing.md"]),
        progress.append,
    )

    assert backend.requests == []
    assert [(result.path, result.content) for result in results] == [("a.md", "Alpha"), ("b.md", "Beta")]
    assert all(result.model == LOCAL_FILE and result.similarity == 1.0 for result in results)
    assert results[0].metadata.file_name == "a.md"
    assert results[0].mtime > 10**12
    assert progress == [QUERYING_DONE]


@pytest.mark.asyncio
async def test_folder_scope_expands_to_text_files(settings: Settings, backend, client) -> None:
    folder = Path(settings.document_root) / "notes"
    (folder / "inner").mkdir(parents=True)
    (folder / "x.md").write_text("X", encoding="utf-8")
    (folder / "inner" / "y.txt").write_text("Y", encoding="utf-8")
    (folder / "z.pdf").write_bytes(b"%PDF")

    results = await _engine(settings, client, FakeRestarter()).process_query(
        "q",
        QueryScope.of(folders=["notes"]),
    )

    assert backend.requests == []
    assert sorted(result.path for result in results) == ["notes/inner/y.txt", "notes/x.md"]


@pytest.mark.asyncio
async def test_empty_folder_scope_falls_back_to_graph(settings: Settings, backend, client) -> None:
    (Path(settings.document_root) / "empty").mkdir()

    results = await _engine(settings, client, FakeRestarter()).process_query(
        "q",
        QueryScope.of(folders=["empty"]),
    )

    assert len(backend.calls("/query")) == 1
    assert results[0].model == GRAPH_MASTER


def test_query_result_to_dict(settings: Settings) -> None:
    from graphkeeper.query import QueryResult, ResultMetadata

    result = QueryResult(
        id=-1,
        model=LOCAL_FILE,
        path="a.md",
        content="A",
        similarity=1.0,
        mtime=1,
        metadata=ResultMetadata(file_name="a.md"),
    )

    assert result.to_dict()["metadata"] == {"start_line": 0, "end_line": 0, "file_name": "a.md"}


@pytest.mark.asyncio
async def test_scope_never_reads_outside_document_root(settings: Settings, backend, client, tmp_path: Path) -> None:
    secret = tmp_path / "secret.md"
    secret.write_text("Top secret", encoding="utf-8")
    (Path(settings.document_root) / "ok.md").write_text("Fine", encoding="utf-8")

    results = await _engine(settings, client, FakeRestarter()).process_query(
        "q",
        QueryScope.of(files=[str(secret), "../secret.md", "ok.md"], folders=[".."]),
    )

    assert backend.requests == []
    assert [result.content for result in results] == ["Fine"]


@pytest.mark.asyncio
async def test_global_query_records_duration(settings: Settings, client) -> None:
    metrics = MetricsRecorder(prometheus_enabled=True)
    engine = QueryEngine(settings, lambda: client, restarter=FakeRestarter(), metrics=metrics, settle_delay=0.0)

    await engine.process_query("alpha?")

    assert "graphkeeper_query_duration_count 1.0" in metrics.render_prometheus().decode("utf-8")
