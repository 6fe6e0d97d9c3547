"""Lifecycle management for the external knowledge-server process.

The supervisor owns the only handle to the child process. It regenerates
the ``.env`` file before every launch, skips the launch when something is
already answering on the health endpoint, and backs up signal-based
termination with a kill-by-name pass that reaps orphans left behind by
earlier sessions.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Awaitable, Callable, Final

import httpx

from .client import BackendClient
from .config import Settings
from .env_file import write_env_file
from .errors import ConfigurationError, GraphKeeperError
from .notifications import Notifier, TimerRegistry
from .observability import MetricsRecorder

logger = logging.getLogger(__name__)
backend_logger = logging.getLogger("graphkeeper.backend")

READY_GRACE_PERIOD: Final[float] = 5.0
RESTART_SETTLE_DELAY: Final[float] = 1.0
STOP_WAIT_TIMEOUT: Final[float] = 3.0
HEALTH_PROBE_TIMEOUT: Final[float] = 1.0
_REAPER_TIMEOUT: Final[float] = 5.0

AsyncReaper = Callable[[str], Awaitable[None]]
SyncReaper = Callable[[str], None]


class SupervisorState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def orphan_kill_command(command: str) -> list[str]:
    """Return the platform's kill-by-name invocation for *command*."""

    name = Path(command).name
    if sys.platform == "win32":
        if not name.lower().endswith(".exe"):
            name = f"{name}.exe"
        return ["taskkill", "/F", "/IM", name, "/T"]
    return ["pkill", "-x", name[:15]]


async def reap_orphans(command: str) -> None:
    """Kill any process named after *command*. Failures are expected and ignored."""

    argv = orphan_kill_command(command)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        await asyncio.wait_for(process.wait(), _REAPER_TIMEOUT)
    except (OSError, asyncio.TimeoutError) as exc:
        logger.debug("supervisor.reap_skipped command=%s error=%s", argv[0], exc)


def reap_orphans_sync(command: str) -> None:
    """Blocking variant of :func:`reap_orphans`, used at shutdown."""

    argv = orphan_kill_command(command)
    try:
        subprocess.run(
            argv,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=_REAPER_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("supervisor.reap_skipped command=%s error=%s", argv[0], exc)


def launch_arguments(settings: Settings) -> list[str]:
    work_dir = settings.work_dir_path()
    return [
        settings.lightrag_command.strip(),
        "--port",
        str(settings.server_port),
        "--working-dir",
        str(work_dir) if work_dir is not None else "",
    ]


def launch_environment() -> dict[str, str]:
    env = dict(os.environ)
    env["PYTHONIOENCODING"] = "utf-8"
    env["PYTHONUTF8"] = "1"
    return env


class ProcessSupervisor:
    """Start, stop, restart and health-check the knowledge server."""

    def __init__(
        self,
        settings: Settings,
        *,
        notifier: Notifier | None = None,
        metrics: MetricsRecorder | None = None,
        timers: TimerRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        reaper: AsyncReaper = reap_orphans,
        sync_reaper: SyncReaper = reap_orphans_sync,
        ready_grace_period: float = READY_GRACE_PERIOD,
        restart_delay: float = RESTART_SETTLE_DELAY,
        stop_timeout: float = STOP_WAIT_TIMEOUT,
    ) -> None:
        self._settings = settings
        self._notifier = notifier
        self._metrics = metrics
        self._timers = timers or TimerRegistry()
        self._transport = transport
        self._reaper = reaper
        self._sync_reaper = sync_reaper
        self._ready_grace_period = ready_grace_period
        self._restart_delay = restart_delay
        self._stop_timeout = stop_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._state = SupervisorState.STOPPED
        self._lock = asyncio.Lock()
        self.spawn_count = 0

    # Properties -------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def has_process(self) -> bool:
        return self._process is not None

    @property
    def is_running(self) -> bool:
        return self._state is SupervisorState.RUNNING

    def set_settings(self, settings: Settings) -> None:
        """Use *settings* for the next start; a running process is left alone."""

        self._settings = settings

    # Operations -------------------------------------------------------

    async def health_check(self, timeout: float = HEALTH_PROBE_TIMEOUT) -> bool:
        async with BackendClient.from_settings(self._settings, transport=self._transport) as client:
            healthy = await client.health(timeout)
        if self._metrics:
            self._metrics.set_gauge("backend.up", 1 if healthy else 0)
        return healthy

    async def start(self) -> bool:
        """Launch the backend unless it already answers.

        Returns ``True`` when the backend is (or is being) brought up and
        ``False`` when the spawn itself failed.
        """

        settings = self._settings
        work_dir = settings.work_dir_path()
        if work_dir is None:
            raise ConfigurationError("Configure the backend working directory first.")
        if not settings.lightrag_command.strip():
            raise ConfigurationError("Configure the backend launch command first.")

        async with self._lock:
            await asyncio.to_thread(write_env_file, settings)

            if await self.health_check(HEALTH_PROBE_TIMEOUT):
                logger.info("supervisor.already_running url=%s", settings.base_url)
                self._state = SupervisorState.RUNNING
                return True

            if self._process is not None:
                logger.info("supervisor.replacing_stale pid=%s", self._process.pid)
                await self._terminate_tracked()

            argv = launch_arguments(settings)
            self._state = SupervisorState.STARTING
            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=str(work_dir),
                    env=launch_environment(),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                self._process = None
                self._state = SupervisorState.STOPPED
                logger.error("supervisor.spawn_failed command=%s error=%s", argv[0], exc)
                if self._metrics:
                    self._metrics.increment("backend.spawn_failed")
                self._notify(f"Could not start the knowledge backend: {exc}")
                return False

            self._process = process
            self.spawn_count += 1
            logger.info("supervisor.spawned pid=%s command=%s cwd=%s", process.pid, argv[0], work_dir)
            if self._metrics:
                self._metrics.increment("backend.spawned")
            self._watch(process)
            self._timers.call_later(self._ready_grace_period, lambda: self._announce_ready(process))
            return True

    async def stop(self) -> None:
        """Terminate the tracked process and reap orphans; safe to call repeatedly."""

        async with self._lock:
            if self._process is not None:
                self._state = SupervisorState.STOPPING
                await self._terminate_tracked()
            command = self._settings.lightrag_command.strip()
            if command:
                try:
                    await self._reaper(command)
                except Exception as exc:  # the reaper is best effort by contract
                    logger.debug("supervisor.reap_failed error=%s", exc)
            self._process = None
            self._state = SupervisorState.STOPPED

    async def restart(self) -> asyncio.Task[None]:
        """Stop now and start again after a settling delay, without waiting for it."""

        self._notify("Restarting the knowledge backend...")
        if self._metrics:
            self._metrics.increment("backend.restarts")
        await self.stop()
        return self._timers.spawn(self._delayed_start(), name="graphkeeper-restart")

    async def wait(self) -> int | None:
        """Block until the tracked process exits; ``None`` when nothing is tracked."""

        process = self._process
        if process is None:
            return None
        return await process.wait()

    def terminate_now(self) -> None:
        """Blocking best-effort shutdown for host teardown."""

        self._timers.cancel_all()
        process = self._process
        self._process = None
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except OSError:
                logger.debug("supervisor.kill_skipped pid=%s", process.pid)
        command = self._settings.lightrag_command.strip()
        if command:
            try:
                self._sync_reaper(command)
            except Exception as exc:  # the reaper is best effort by contract
                logger.debug("supervisor.reap_failed error=%s", exc)
        self._state = SupervisorState.STOPPED
        logger.info("supervisor.terminated")

    # Internal helpers -------------------------------------------------

    async def _delayed_start(self) -> None:
        await asyncio.sleep(self._restart_delay)
        try:
            await self.start()
        except (GraphKeeperError, OSError) as exc:
            logger.warning("supervisor.restart_failed error=%s", exc)
            self._notify(f"Restart failed: {exc}")

    async def _terminate_tracked(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("supervisor.terminate_timeout pid=%s; killing", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
        logger.info("supervisor.stopped pid=%s code=%s", process.pid, process.returncode)

    def _watch(self, process: asyncio.subprocess.Process) -> None:
        if process.stdout is not None:
            self._timers.spawn(self._pump(process.stdout, logging.DEBUG), name="graphkeeper-stdout")
        if process.stderr is not None:
            self._timers.spawn(self._pump(process.stderr, logging.INFO), name="graphkeeper-stderr")
        self._timers.spawn(self._wait_for_exit(process), name="graphkeeper-exit-watch")

    @staticmethod
    async def _pump(stream: asyncio.StreamReader, level: int) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            backend_logger.log(level, "%s", line.decode("utf-8", errors="replace").rstrip())

    async def _wait_for_exit(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if self._process is process:
            self._process = None
            self._state = SupervisorState.STOPPED
            logger.warning("supervisor.exited pid=%s code=%s", process.pid, code)
            self._notify(f"Knowledge backend exited (code {code}).")

    def _announce_ready(self, process: asyncio.subprocess.Process) -> None:
        if self._process is not process:
            return
        self._state = SupervisorState.RUNNING
        logger.info("supervisor.ready pid=%s", process.pid)
        self._notify(f"Knowledge backend running on port {self._settings.server_port}.")

    def _notify(self, message: str) -> None:
        if self._notifier is not None:
            self._notifier.notify(message)


__all__ = [
    "ProcessSupervisor",
    "SupervisorState",
    "launch_arguments",
    "launch_environment",
    "orphan_kill_command",
    "reap_orphans",
    "reap_orphans_sync",
    "READY_GRACE_PERIOD",
    "RESTART_SETTLE_DELAY",
]
