"""One-restart-then-retry policy for requests against a sleeping backend."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Final, Protocol, TypeVar

from .errors import BackendError, TransportError
from .notifications import Notifier
from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

T = TypeVar("T")

RECOVERY_SETTLE_DELAY: Final[float] = 4.0
WAKE_MESSAGE: Final[str] = "Waking the knowledge backend... (this takes a few seconds)"


class Restarter(Protocol):
    """Anything able to restart the backend."""

    async def restart(self) -> object:
        ...


async def call_with_recovery(
    operation: Callable[[], Awaitable[T]],
    *,
    restarter: Restarter,
    auto_recover: bool,
    notifier: Notifier | None = None,
    settle_delay: float = RECOVERY_SETTLE_DELAY,
    metrics: MetricsRecorder | None = None,
    label: str = "request",
) -> T:
    """Run *operation*; on failure restart the backend once and retry once.

    Never loops: at most one restart and two calls. Without *auto_recover*
    the first failure propagates unchanged.
    """

    try:
        return await operation()
    except (TransportError, BackendError) as first_error:
        if not auto_recover:
            raise
        logger.warning("recovery.first_attempt_failed label=%s error=%s", label, first_error)

    if notifier is not None:
        notifier.notify(WAKE_MESSAGE)
    await restarter.restart()
    await asyncio.sleep(settle_delay)

    logger.info("recovery.retrying label=%s", label)
    result = await operation()
    if metrics:
        metrics.increment(f"{label}.recovered")
    return result


__all__ = ["Restarter", "call_with_recovery", "RECOVERY_SETTLE_DELAY", "WAKE_MESSAGE"]
