"""Process-wide wiring: one settings store, one supervisor, one client, one query engine."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterable

import httpx

from .client import BackendClient, PipelineStatus
from .config import Settings, SettingsStore, load_settings
from .env_file import write_env_file
from .errors import ConfigurationError
from .ingestion import BatchReport, IngestionCoordinator, IngestionJob
from .lazy import LazyInstance
from .notifications import LogNotifier, Notifier, ProgressNotice, TimerRegistry
from .observability import MetricsRecorder
from .pipeline import PipelineMonitor
from .query import QueryEngine, QueryResult, QueryScope
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

_LOGGING_CONFIGURED = False


def configure_logging() -> None:
    """Attach a single handler to the ``graphkeeper`` logger tree (idempotent)."""

    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    package_logger = logging.getLogger("graphkeeper")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        package_logger.handlers = []
        for handler in handlers:
            package_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        package_logger.addHandler(handler)

    if package_logger.level == logging.NOTSET or package_logger.level > logging.INFO:
        package_logger.setLevel(logging.INFO)
    package_logger.propagate = False
    _LOGGING_CONFIGURED = True


class GraphKeeper:
    """Container for the runtime services and the commands callers invoke."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        notifier: Notifier | None = None,
        metrics: MetricsRecorder | None = None,
        timers: TimerRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        settings = settings or load_settings()
        self._store = SettingsStore(settings)
        self.notifier: Notifier = notifier or LogNotifier()
        self.metrics = metrics or settings.build_metrics_recorder()
        self.timers = timers or TimerRegistry()
        self._transport = transport
        self._client: BackendClient | None = None

        self.supervisor = supervisor or ProcessSupervisor(
            settings,
            notifier=self.notifier,
            metrics=self.metrics,
            timers=self.timers,
            transport=transport,
        )
        self.monitor = PipelineMonitor(
            self._pipeline_status,
            notifier=self.notifier,
            timers=self.timers,
            metrics=self.metrics,
        )
        self.coordinator = IngestionCoordinator(
            self.client,
            settings=settings,
            monitor=self.monitor,
            notifier=self.notifier,
            metrics=self.metrics,
        )
        self._engine: LazyInstance[QueryEngine] = LazyInstance(self._create_engine, name="query-engine")
        self._store.add_listener(self._propagate_settings)

    @property
    def settings(self) -> Settings:
        return self._store.current

    def client(self) -> BackendClient:
        """Return the shared backend client, creating it for the current settings."""

        if self._client is None:
            self._client = BackendClient.from_settings(self.settings, transport=self._transport)
        return self._client

    async def query_engine(self) -> QueryEngine:
        return await self._engine.get()

    # Lifecycle --------------------------------------------------------

    async def startup(self) -> bool:
        """Start the backend when auto-start is enabled. Returns whether it was launched."""

        if not self.settings.enable_auto_start_server:
            logger.info("runtime.startup auto_start=false")
            return False
        try:
            return await self.supervisor.start()
        except ConfigurationError as exc:
            logger.warning("runtime.startup_skipped reason=%s", exc)
            self.notifier.notify(str(exc))
            return False

    def teardown(self) -> None:
        """Cancel everything pending and kill the backend synchronously."""

        self.monitor.close()
        self.timers.cancel_all()
        self.supervisor.terminate_now()
        self._engine.reset()
        self._client = None
        logger.info("runtime.teardown complete")

    async def aclose(self) -> None:
        client = self._client
        self.teardown()
        if client is not None:
            await client.aclose()

    async def detach(self) -> None:
        """Release background work and the client but leave the backend running."""

        self.monitor.close()
        self.timers.cancel_all()
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    # Commands ---------------------------------------------------------

    async def start_backend(self) -> bool:
        return await self.supervisor.start()

    async def wait_for_pipeline(self) -> None:
        await self.monitor.wait()

    async def restart_backend(self) -> asyncio.Task[None]:
        return await self.supervisor.restart()

    async def backend_healthy(self) -> bool:
        return await self.supervisor.health_check()

    def write_env(self) -> Path:
        return write_env_file(self.settings)

    async def ingest_document(self, path: str | Path) -> IngestionJob:
        target = self._resolve(path)
        notice = ProgressNotice(self.notifier, f"Preparing {target.name}...", timers=self.timers)
        try:
            job = await self.coordinator.ingest_file(target, notice)
        except ConfigurationError as exc:
            notice.finish(str(exc))
            raise
        if job.succeeded:
            # The pipeline monitor reports through this notice and finishes it.
            notice.set_message(f"{job.source} sent to the knowledge graph.")
        else:
            notice.finish(f"{job.source} was not ingested: {job.error}")
        return job

    async def ingest_folder(self, path: str | Path) -> BatchReport:
        target = self._resolve(path)
        notice = ProgressNotice(self.notifier, f"Scanning {target}...", timers=self.timers)
        try:
            report = await self.coordinator.ingest_folder(target, notice)
        except ConfigurationError as exc:
            notice.finish(str(exc))
            raise
        summary = f"Sent {report.succeeded}/{report.total} files from {target.name or target}."
        if report.failed:
            summary = f"{summary} {report.failed} failed."
        if report.monitor is not None:
            notice.set_message(summary)
        else:
            notice.finish(summary)
        return report

    async def query(
        self,
        text: str,
        files: Iterable[str] = (),
        folders: Iterable[str] = (),
    ) -> list[QueryResult]:
        engine = await self._engine.get()
        return await engine.process_query(text, QueryScope.of(files, folders))

    async def update_settings(self, settings: Settings) -> Settings:
        """Validate and install *settings*; components pick them up immediately.

        A running backend keeps its old configuration until the next restart.
        """

        previous = self.settings
        self._store.replace(settings)
        if previous.base_url != settings.base_url and self._client is not None:
            stale, self._client = self._client, None
            await stale.aclose()
        logger.info("runtime.settings_updated base_url=%s", settings.base_url)
        return settings

    # Internal helpers -------------------------------------------------

    def _propagate_settings(self, settings: Settings) -> None:
        self.supervisor.set_settings(settings)
        self.coordinator.set_settings(settings)
        engine = self._engine.peek()
        if engine is not None:
            engine.set_settings(settings)

    async def _create_engine(self) -> QueryEngine:
        return QueryEngine(
            self.settings,
            self.client,
            restarter=self.supervisor,
            notifier=self.notifier,
            metrics=self.metrics,
        )

    async def _pipeline_status(self) -> PipelineStatus:
        return await self.client().pipeline_status()

    def _resolve(self, path: str | Path) -> Path:
        candidate = Path(path).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.settings.document_root_path() / candidate


__all__ = ["GraphKeeper", "configure_logging"]
