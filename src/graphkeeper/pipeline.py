"""Poll the backend's ingestion pipeline until it drains."""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable, Final

from .client import PipelineStatus
from .errors import BackendError, TransportError
from .notifications import LogNotifier, Notifier, ProgressNotice, ProgressUpdate, TimerRegistry
from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

INITIAL_POLL_DELAY: Final[float] = 1.0
POLL_INTERVAL: Final[float] = 2.0
MAX_CONSECUTIVE_ERRORS: Final[int] = 5

StatusFetcher = Callable[[], Awaitable[PipelineStatus]]


class MonitorOutcome(enum.Enum):
    COMPLETED = "completed"
    DEGRADED = "degraded"
    CANCELLED = "cancelled"


_FINAL_MESSAGES: Final[dict[MonitorOutcome, str]] = {
    MonitorOutcome.COMPLETED: "Knowledge graph updated: all documents processed.",
    MonitorOutcome.DEGRADED: (
        "Lost pipeline status visibility; processing may continue in the background."
    ),
    MonitorOutcome.CANCELLED: "Stopped watching the ingestion pipeline.",
}


def describe_status(status: PipelineStatus) -> str:
    message = f"Processing graph: {status.percent}% (batch {status.cur_batch}/{status.batchs})"
    if status.latest_message:
        message = f"{message}\n{status.latest_message}"
    return message


class PipelineMonitor:
    """Fixed-interval polling with a consecutive-error budget."""

    def __init__(
        self,
        fetch_status: StatusFetcher,
        *,
        notifier: Notifier | None = None,
        timers: TimerRegistry | None = None,
        metrics: MetricsRecorder | None = None,
        initial_delay: float = INITIAL_POLL_DELAY,
        poll_interval: float = POLL_INTERVAL,
        max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
    ) -> None:
        self._fetch_status = fetch_status
        self._notifier = notifier or LogNotifier()
        self._timers = timers or TimerRegistry()
        self._metrics = metrics
        self._initial_delay = initial_delay
        self._poll_interval = poll_interval
        self._max_errors = max(0, max_consecutive_errors)
        self._runs: dict[asyncio.Event, asyncio.Task[Any] | None] = {}
        self._closed: set[asyncio.Event] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def active(self) -> int:
        return len(self._runs)

    def start(self, notice: ProgressNotice | None = None) -> asyncio.Task[MonitorOutcome]:
        """Run :meth:`run` in the background and keep track of the task."""

        task = self._timers.spawn(self.run(notice), name="graphkeeper-pipeline-monitor")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self, notice: ProgressNotice | None = None) -> MonitorOutcome:
        if notice is None:
            notice = ProgressNotice(
                self._notifier,
                "Waiting for the knowledge graph to pick up new documents...",
                timers=self._timers,
            )
        stop = asyncio.Event()
        self._runs[stop] = asyncio.current_task()
        try:
            if await self._sleep(stop, self._initial_delay):
                return self._finish(stop, notice, MonitorOutcome.CANCELLED)

            errors = 0
            last_message: str | None = None
            while True:
                try:
                    status = await self._fetch_status()
                except (TransportError, BackendError) as exc:
                    errors += 1
                    logger.warning("pipeline.poll_failed errors=%s error=%s", errors, exc)
                    if errors > self._max_errors:
                        return self._finish(stop, notice, MonitorOutcome.DEGRADED)
                else:
                    errors = 0
                    if not status.busy:
                        return self._finish(stop, notice, MonitorOutcome.COMPLETED)
                    if self._metrics:
                        self._metrics.set_gauge("pipeline.percent", status.percent)
                    message = describe_status(status)
                    if message != last_message:
                        notice(
                            ProgressUpdate(
                                message,
                                percent=float(status.percent),
                                current=status.cur_batch,
                                total=status.batchs,
                            )
                        )
                        last_message = message

                if await self._sleep(stop, self._poll_interval):
                    return self._finish(stop, notice, MonitorOutcome.CANCELLED)
        except asyncio.CancelledError:
            # Torn down with the host: nothing left to show the message on.
            notice.hide()
            raise
        finally:
            self._runs.pop(stop, None)
            self._closed.discard(stop)

    async def wait(self) -> list[MonitorOutcome]:
        """Wait for every monitor started so far."""

        tasks = list(self._tasks)
        if not tasks:
            return []
        results = await asyncio.gather(*tasks, return_exceptions=True)
        return [item for item in results if isinstance(item, MonitorOutcome)]

    def close(self) -> None:
        """Stop every running loop without posting further messages or timers.

        Background tasks are cancelled. Loops awaited directly by a caller are
        signalled through their stop event instead.
        """

        for stop, task in list(self._runs.items()):
            self._closed.add(stop)
            if task is None or task not in self._tasks:
                stop.set()
        # The stop event stays unset for cancelled tasks: wait_for on 3.10/3.11
        # drops a cancellation that lands together with a completed wait.
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    @staticmethod
    async def _sleep(stop: asyncio.Event, delay: float) -> bool:
        """Sleep for *delay*; return ``True`` if the stop signal fired first."""

        if stop.is_set():
            return True
        try:
            await asyncio.wait_for(stop.wait(), delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _finish(self, stop: asyncio.Event, notice: ProgressNotice, outcome: MonitorOutcome) -> MonitorOutcome:
        if stop in self._closed:
            notice.hide()
        else:
            notice.finish(_FINAL_MESSAGES[outcome])
        logger.info("pipeline.finished outcome=%s", outcome.value)
        if self._metrics:
            self._metrics.increment("pipeline.outcome", outcome=outcome.value)
        return outcome


__all__ = ["PipelineMonitor", "PipelineStatus", "MonitorOutcome", "describe_status"]
