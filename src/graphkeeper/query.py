"""Answer questions from the knowledge graph, or straight from local files when scoped."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import nullcontext
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Final, Iterable

from .client import BackendClient
from .config import Settings
from .errors import GraphKeeperError
from .ingestion import DocumentKind, classify, iter_supported_files
from .notifications import Notifier
from .observability import MetricsRecorder
from .recovery import RECOVERY_SETTLE_DELAY, Restarter, call_with_recovery

logger = logging.getLogger(__name__)

LOCAL_FILE: Final[str] = "local-file"
GRAPH_MASTER: Final[str] = "graph-master"
GRAPH_REFERENCE: Final[str] = "graph-reference"
GRAPH_OFFLINE: Final[str] = "graph-offline"

_MASTER_ID: Final[int] = -1
_OFFLINE_ID: Final[int] = -2
_REFERENCE_SIMILARITY: Final[float] = 0.5


@dataclass(slots=True, frozen=True)
class ResultMetadata:
    start_line: int = 0
    end_line: int = 0
    file_name: str = ""


@dataclass(slots=True, frozen=True)
class QueryResult:
    """One renderable answer fragment. ``model`` names where it came from."""

    id: int
    model: str
    path: str
    content: str
    similarity: float
    mtime: int
    metadata: ResultMetadata = field(default_factory=ResultMetadata)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class QueryScope:
    """Restrict a query to explicit files and folders, relative to the document root."""

    files: tuple[str, ...] = ()
    folders: tuple[str, ...] = ()

    @classmethod
    def of(cls, files: Iterable[str] = (), folders: Iterable[str] = ()) -> "QueryScope":
        return cls(files=tuple(files), folders=tuple(folders))

    @property
    def is_empty(self) -> bool:
        return not self.files and not self.folders


@dataclass(slots=True, frozen=True)
class QueryProgress:
    kind: str


QUERYING: Final[QueryProgress] = QueryProgress("querying")
QUERYING_DONE: Final[QueryProgress] = QueryProgress("querying-done")

QueryProgressSink = Callable[[QueryProgress], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _reference_text(reference: dict[str, Any]) -> str:
    content = reference.get("content")
    if isinstance(content, list):
        return "\n\n".join(str(item) for item in content if item)
    if content:
        return str(content)
    return ""


class QueryEngine:
    """Pick the scoped or global strategy and shape the answer into results."""

    def __init__(
        self,
        settings: Settings,
        client: Callable[[], BackendClient],
        *,
        restarter: Restarter,
        notifier: Notifier | None = None,
        metrics: MetricsRecorder | None = None,
        settle_delay: float = RECOVERY_SETTLE_DELAY,
    ) -> None:
        self._settings = settings
        self._client = client
        self._restarter = restarter
        self._notifier = notifier
        self._metrics = metrics
        self._settle_delay = settle_delay

    @property
    def settings(self) -> Settings:
        return self._settings

    def set_settings(self, settings: Settings) -> None:
        self._settings = settings

    async def process_query(
        self,
        query: str,
        scope: QueryScope | None = None,
        on_progress: QueryProgressSink | None = None,
    ) -> list[QueryResult]:
        """Resolve *query* into results; never raises for backend outages."""

        if scope is not None and not scope.is_empty:
            paths = await asyncio.to_thread(self._resolve_scope, scope)
            if scope.files or paths:
                results = await asyncio.to_thread(self._read_local, paths)
                logger.info("query.scoped files=%s", len(results))
                if on_progress:
                    on_progress(QUERYING_DONE)
                return results

        if on_progress:
            on_progress(QUERYING)
        timing = self._metrics.track_timing("query.duration") if self._metrics else nullcontext()
        try:
            with timing:
                payload = await call_with_recovery(
                    lambda: self._client().query(query),
                    restarter=self._restarter,
                    auto_recover=self._settings.enable_auto_start_server,
                    notifier=self._notifier,
                    settle_delay=self._settle_delay,
                    metrics=self._metrics,
                    label="query",
                )
        except GraphKeeperError as exc:
            logger.error("query.failed error=%s", exc)
            if self._metrics:
                self._metrics.increment("query.failed")
            if on_progress:
                on_progress(QUERYING_DONE)
            return [self._offline_result(exc)]

        results = self._graph_results(payload)
        logger.info("query.answered results=%s", len(results))
        if on_progress:
            on_progress(QUERYING_DONE)
        return results

    # Scoped ------------------------------------------------------------

    def _resolve_scope(self, scope: QueryScope) -> list[tuple[str, Path]]:
        """Map scope entries onto files below the document root; runs off the event loop."""

        root = self._settings.document_root_path()
        resolved: list[tuple[str, Path]] = []
        seen: set[Path] = set()

        def _inside_root(entry: str) -> Path | None:
            candidate = (root / entry).resolve()
            if not candidate.is_relative_to(root):
                logger.warning("query.scope_outside_root path=%s", entry)
                return None
            return candidate

        def _add(label: str, path: Path) -> None:
            if path not in seen:
                seen.add(path)
                resolved.append((label, path))

        for entry in scope.files:
            path = _inside_root(entry)
            if path is not None:
                _add(entry, path)
        for entry in scope.folders:
            folder = _inside_root(entry)
            if folder is None:
                continue
            if not folder.is_dir():
                logger.warning("query.scope_folder_missing folder=%s", entry)
                continue
            for path in iter_supported_files(folder):
                if classify(path) is DocumentKind.TEXT:
                    _add(path.relative_to(root).as_posix(), path.resolve())
        return resolved

    @staticmethod
    def _read_local(paths: list[tuple[str, Path]]) -> list[QueryResult]:
        results: list[QueryResult] = []
        for label, path in paths:
            if not path.is_file():
                logger.debug("query.scope_file_missing path=%s", label)
                continue
            try:
                content = path.read_text(encoding="utf-8", errors="replace")
                mtime = int(path.stat().st_mtime * 1000)
            except OSError as exc:
                logger.warning("query.scope_read_failed path=%s error=%s", label, exc)
                continue
            results.append(
                QueryResult(
                    id=_MASTER_ID,
                    model=LOCAL_FILE,
                    path=label,
                    content=content,
                    similarity=1.0,
                    mtime=mtime,
                    metadata=ResultMetadata(file_name=path.name),
                )
            )
        return results

    # Global ------------------------------------------------------------

    def _graph_results(self, payload: Any) -> list[QueryResult]:
        if isinstance(payload, str):
            answer, references = payload, []
        elif isinstance(payload, dict):
            answer = str(payload.get("response") or "")
            raw = payload.get("references")
            references = [item for item in raw if isinstance(item, dict)] if isinstance(raw, list) else []
        else:
            answer, references = "", []

        now = _now_ms()
        labels = [str(ref.get("file_path") or f"Ref #{index}") for index, ref in enumerate(references, start=1)]
        results: list[QueryResult] = []

        if answer:
            content = answer
            if self._settings.lightrag_show_citations and labels:
                citations = "\n".join(f"[{index}] {label}" for index, label in enumerate(labels, start=1))
                content = f"{answer}\n\n### References\n{citations}"
            results.append(
                QueryResult(
                    id=_MASTER_ID,
                    model=GRAPH_MASTER,
                    path="Knowledge graph answer",
                    content=content,
                    similarity=1.0,
                    mtime=now,
                    metadata=ResultMetadata(file_name="GraphAnswer"),
                )
            )

        for index, (reference, label) in enumerate(zip(references, labels)):
            text = _reference_text(reference)
            content = f"[Graph source] {label}\n\n{text}" if text else f"[Graph source] {label}"
            results.append(
                QueryResult(
                    id=-(index + 2),
                    model=GRAPH_REFERENCE,
                    path=label,
                    content=content,
                    similarity=_REFERENCE_SIMILARITY,
                    mtime=now,
                    metadata=ResultMetadata(file_name=label),
                )
            )
        return results

    def _offline_result(self, error: Exception) -> QueryResult:
        if self._settings.enable_auto_start_server:
            detail = "A restart was attempted but the server still did not answer."
        else:
            detail = "Automatic restart is disabled; start the server and try again."
        content = (
            f"Could not reach the knowledge server at {self._settings.base_url}.\n"
            f"{detail}\n\nError: {error}"
        )
        return QueryResult(
            id=_OFFLINE_ID,
            model=GRAPH_OFFLINE,
            path="Knowledge graph offline",
            content=content,
            similarity=1.0,
            mtime=_now_ms(),
        )


__all__ = [
    "QueryEngine",
    "QueryResult",
    "QueryScope",
    "QueryProgress",
    "ResultMetadata",
    "QUERYING",
    "QUERYING_DONE",
    "LOCAL_FILE",
    "GRAPH_MASTER",
    "GRAPH_REFERENCE",
    "GRAPH_OFFLINE",
]
