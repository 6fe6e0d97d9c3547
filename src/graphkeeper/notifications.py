"""User-facing notifications, in-place progress indicators and timer tracking."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass
from itertools import count
from typing import Any, Callable, Coroutine, Protocol

logger = logging.getLogger(__name__)

NOTICE_DISMISS_DELAY = 5.0
NOTICE_HISTORY_LIMIT = 200


@dataclass(slots=True, frozen=True)
class ProgressUpdate:
    """One progress report from a long-running command."""

    message: str
    percent: float | None = None
    current: int | None = None
    total: int | None = None
    filename: str | None = None


ProgressSink = Callable[[ProgressUpdate], None]


class Notifier(Protocol):
    """Sink for user-visible messages."""

    def notify(self, message: str) -> None:
        """Show a transient message."""
        ...

    def show_progress(self, key: str, message: str) -> None:
        """Create or update the persistent indicator identified by *key*."""
        ...

    def hide_progress(self, key: str) -> None:
        """Remove the persistent indicator identified by *key*."""
        ...


class LogNotifier:
    """Notifier that writes to the log and remembers visible indicators."""

    def __init__(
        self,
        logger: logging.Logger | None = None,
        *,
        history_limit: int = NOTICE_HISTORY_LIMIT,
    ) -> None:
        self._logger = logger or logging.getLogger("graphkeeper.notices")
        self._lock = threading.Lock()
        self._active: dict[str, str] = {}
        # Most recent messages only; a long-running server keeps notifying.
        self.history: deque[str] = deque(maxlen=history_limit)

    def notify(self, message: str) -> None:
        self._logger.info("notice %s", message)
        with self._lock:
            self.history.append(message)

    def show_progress(self, key: str, message: str) -> None:
        self._logger.info("progress[%s] %s", key, message)
        with self._lock:
            self._active[key] = message
            self.history.append(message)

    def hide_progress(self, key: str) -> None:
        with self._lock:
            self._active.pop(key, None)

    def active(self) -> dict[str, str]:
        with self._lock:
            return dict(self._active)


class TimerRegistry:
    """Track delayed callbacks and background tasks so teardown can cancel them."""

    def __init__(self) -> None:
        self._handles: set[asyncio.TimerHandle] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("timers.no_loop callback=%r; running immediately", callback)
            callback()
            return None

        handle: asyncio.TimerHandle

        def _fire() -> None:
            self._handles.discard(handle)
            callback()

        handle = loop.call_later(delay, _fire)
        self._handles.add(handle)
        return handle

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._handles) + len(self._tasks)

    def cancel_all(self) -> None:
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


_notice_ids = count(1)


class ProgressNotice:
    """A single persistent indicator, updated in place and dismissed after a delay.

    Instances are callable so they can be handed directly to anything that
    expects a :data:`ProgressSink`.
    """

    def __init__(
        self,
        notifier: Notifier,
        initial_message: str,
        *,
        timers: TimerRegistry | None = None,
        dismiss_delay: float = NOTICE_DISMISS_DELAY,
    ) -> None:
        self._notifier = notifier
        self._timers = timers or TimerRegistry()
        self._dismiss_delay = dismiss_delay
        self.key = f"notice-{next(_notice_ids)}"
        self.message = initial_message
        self.finished = False
        self._notifier.show_progress(self.key, initial_message)

    def __call__(self, update: ProgressUpdate) -> None:
        self.set_message(update.message)

    def set_message(self, message: str) -> None:
        if self.finished:
            return
        self.message = message
        self._notifier.show_progress(self.key, message)

    def finish(self, message: str) -> None:
        """Show *message* and schedule the indicator to disappear."""

        self.message = message
        self._notifier.show_progress(self.key, message)
        self.finished = True
        self._timers.call_later(self._dismiss_delay, self.hide)

    def hide(self) -> None:
        self._notifier.hide_progress(self.key)


__all__ = [
    "NOTICE_DISMISS_DELAY",
    "NOTICE_HISTORY_LIMIT",
    "ProgressUpdate",
    "ProgressSink",
    "Notifier",
    "LogNotifier",
    "TimerRegistry",
    "ProgressNotice",
]
