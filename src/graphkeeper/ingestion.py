"""Submit documents to the knowledge server, one file or a whole folder at a time."""

from __future__ import annotations

import asyncio
import enum
import logging
import mimetypes
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Final

from .client import BackendClient
from .config import Settings
from .errors import BackendError, ConfigurationError, TransportError, UnsupportedDocumentError
from .notifications import Notifier, ProgressNotice, ProgressSink, ProgressUpdate
from .observability import MetricsRecorder
from .pipeline import MonitorOutcome, PipelineMonitor

logger = logging.getLogger(__name__)

TEXT_SUFFIXES: Final[frozenset[str]] = frozenset(
    {".md", ".markdown", ".txt", ".html", ".htm", ".csv", ".json"}
)
BINARY_SUFFIXES: Final[frozenset[str]] = frozenset({".pdf", ".docx", ".pptx", ".xlsx"})
BATCH_PACING_DELAY: Final[float] = 0.5


class DocumentKind(enum.Enum):
    TEXT = "text"
    BINARY = "binary"


def classify(path: Path) -> DocumentKind | None:
    suffix = path.suffix.lower()
    if suffix in TEXT_SUFFIXES:
        return DocumentKind.TEXT
    if suffix in BINARY_SUFFIXES:
        return DocumentKind.BINARY
    return None


def is_supported_file(path: Path) -> bool:
    return classify(path) is not None


def iter_supported_files(folder: Path) -> list[Path]:
    """Every supported file below *folder*, at any depth."""

    return [path for path in sorted(folder.rglob("*")) if path.is_file() and is_supported_file(path)]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class IngestionJob:
    """One submission. Its terminal state reflects the HTTP call, not graph processing."""

    source: str
    kind: DocumentKind
    status: str = "pending"
    error: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def mark_succeeded(self) -> None:
        self.status = "succeeded"
        self.error = None
        self.updated_at = _now()

    def mark_failed(self, error: str) -> None:
        self.status = "failed"
        self.error = error
        self.updated_at = _now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "kind": self.kind.value,
            "status": self.status,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True)
class BatchReport:
    folder: str
    jobs: list[IngestionJob] = field(default_factory=list)
    monitor: asyncio.Task[MonitorOutcome] | None = field(default=None, repr=False)

    @property
    def total(self) -> int:
        return len(self.jobs)

    @property
    def succeeded(self) -> int:
        return sum(1 for job in self.jobs if job.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for job in self.jobs if job.status == "failed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "folder": self.folder,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "jobs": [job.to_dict() for job in self.jobs],
        }


class IngestionCoordinator:
    """Sequence single-file and folder ingestion through the backend client."""

    def __init__(
        self,
        client: Callable[[], BackendClient],
        *,
        settings: Settings,
        monitor: PipelineMonitor | None = None,
        notifier: Notifier | None = None,
        metrics: MetricsRecorder | None = None,
        pacing_delay: float = BATCH_PACING_DELAY,
    ) -> None:
        self._client = client
        self._settings = settings
        self._monitor = monitor
        self._notifier = notifier
        self._metrics = metrics
        self._pacing_delay = pacing_delay

    def set_settings(self, settings: Settings) -> None:
        self._settings = settings

    def can_ingest(self, path: Path) -> bool:
        return path.is_file() and is_supported_file(path)

    async def ingest_text(self, text: str, source: str | None = None) -> bool:
        """Submit a block of text; returns whether the backend accepted it."""

        label = source.strip() if source and source.strip() else f"Note_{int(time.time() * 1000)}.md"
        job = IngestionJob(source=label, kind=DocumentKind.TEXT)
        try:
            await self._client().insert_text(text, label)
        except (TransportError, BackendError) as exc:
            self._record_failure(job, exc)
            return False
        self._record_success(job)
        return True

    async def ingest_file(self, path: Path, progress: ProgressSink | None = None) -> IngestionJob:
        """Submit one document and, if it was accepted, start watching the pipeline."""

        kind = classify(path)
        if kind is None:
            raise UnsupportedDocumentError(f"Unsupported document type: {path.suffix or path.name}")
        if not await asyncio.to_thread(path.is_file):
            raise ConfigurationError(f"Document not found: {path}")

        source = await asyncio.to_thread(self._source_label, path)
        if progress:
            progress(ProgressUpdate(f"Sending {source} to the knowledge graph...", filename=source))
        job = await self._submit(path, kind, source)
        if job.succeeded:
            if progress:
                progress(ProgressUpdate(f"Submitted {source}.", percent=100.0, filename=source))
            self._start_monitor(progress)
        return job

    async def ingest_folder(self, folder: Path, progress: ProgressSink | None = None) -> BatchReport:
        """Submit every supported file below *folder*, one after another."""

        if not await asyncio.to_thread(folder.is_dir):
            raise ConfigurationError(f"Folder not found: {folder}")

        files = await asyncio.to_thread(iter_supported_files, folder)
        total = len(files)
        report = BatchReport(folder=str(folder))
        logger.info("ingest.folder.start folder=%s files=%s", folder, total)

        for index, path in enumerate(files, start=1):
            source = await asyncio.to_thread(self._source_label, path)
            kind = classify(path)
            assert kind is not None
            report.jobs.append(await self._submit(path, kind, source))
            if progress:
                progress(
                    ProgressUpdate(
                        f"Ingesting {index}/{total}: {path.name}",
                        percent=index / total * 100.0,
                        current=index,
                        total=total,
                        filename=path.name,
                    )
                )
            if index < total and self._pacing_delay > 0:
                await asyncio.sleep(self._pacing_delay)

        logger.info(
            "ingest.folder.done folder=%s succeeded=%s failed=%s",
            folder,
            report.succeeded,
            report.failed,
        )
        report.monitor = self._start_monitor(progress)
        return report

    async def _submit(self, path: Path, kind: DocumentKind, source: str) -> IngestionJob:
        job = IngestionJob(source=source, kind=kind)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            self._record_failure(job, exc)
            return job

        try:
            if kind is DocumentKind.TEXT:
                text = data.decode("utf-8", errors="replace")
                if path.suffix.lower() in self._settings.title_prefix_extensions:
                    text = f"# {path.stem}\n\n{text}"
                await self._client().insert_text(text, source)
            else:
                content_type = mimetypes.guess_type(path.name)[0]
                await self._client().upload_file(path.name, data, content_type)
        except (TransportError, BackendError) as exc:
            self._record_failure(job, exc)
            return job

        self._record_success(job)
        return job

    def _record_success(self, job: IngestionJob) -> None:
        job.mark_succeeded()
        logger.info("ingest.submitted source=%s kind=%s", job.source, job.kind.value)
        if self._metrics:
            self._metrics.increment("ingestion.submitted", kind=job.kind.value)

    def _record_failure(self, job: IngestionJob, exc: Exception) -> None:
        job.mark_failed(str(exc))
        logger.warning("ingest.failed source=%s error=%s", job.source, exc)
        if self._metrics:
            self._metrics.increment("ingestion.failed", kind=job.kind.value)
        if self._notifier is not None:
            self._notifier.notify(f"Could not send {job.source} to the knowledge graph: {exc}")

    def _start_monitor(self, progress: ProgressSink | None) -> asyncio.Task[MonitorOutcome] | None:
        if self._monitor is None:
            return None
        # A notice handed in by the caller keeps reporting through the pipeline phase.
        notice = progress if isinstance(progress, ProgressNotice) else None
        return self._monitor.start(notice)

    def _source_label(self, path: Path) -> str:
        root = self._settings.document_root_path()
        try:
            return path.resolve().relative_to(root).as_posix()
        except ValueError:
            return path.name


__all__ = [
    "TEXT_SUFFIXES",
    "BINARY_SUFFIXES",
    "DocumentKind",
    "IngestionJob",
    "BatchReport",
    "IngestionCoordinator",
    "classify",
    "is_supported_file",
    "iter_supported_files",
]
