"""Lazily created, process-wide instances with an in-flight creation guard."""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LazyState(enum.Enum):
    ABSENT = "absent"
    INITIALIZING = "initializing"
    READY = "ready"


class LazyInstance(Generic[T]):
    """Create an instance on first use; concurrent callers share the creation.

    If the factory raises, the holder returns to ``ABSENT`` so the next call
    retries from scratch.
    """

    def __init__(self, factory: Callable[[], Awaitable[T]], *, name: str = "instance") -> None:
        self._factory = factory
        self._name = name
        self._state = LazyState.ABSENT
        self._value: T | None = None
        self._pending: asyncio.Future[T] | None = None

    @property
    def state(self) -> LazyState:
        return self._state

    def peek(self) -> T | None:
        """Return the instance if it is ready, without creating it."""

        return self._value if self._state is LazyState.READY else None

    async def get(self) -> T:
        if self._state is LazyState.READY:
            assert self._value is not None
            return self._value
        if self._state is LazyState.INITIALIZING and self._pending is not None:
            return await asyncio.shield(self._pending)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        self._pending = future
        self._state = LazyState.INITIALIZING
        logger.debug("lazy.initializing name=%s", self._name)
        try:
            value = await self._factory()
        except BaseException as exc:
            self._state = LazyState.ABSENT
            self._pending = None
            if not future.done():
                if isinstance(exc, asyncio.CancelledError):
                    future.cancel()
                else:
                    future.set_exception(exc)
                    # Waiters re-raise it; mark retrieved for the no-waiter case.
                    future.exception()
            logger.warning("lazy.failed name=%s error=%s", self._name, exc)
            raise
        if self._pending is not future:
            # reset() ran while the factory was awaiting; hand the value out anyway.
            if not future.done():
                future.set_result(value)
            return value
        self._value = value
        self._state = LazyState.READY
        self._pending = None
        future.set_result(value)
        return value

    def reset(self) -> T | None:
        """Drop the instance (teardown). Returns what was held, if anything."""

        value = self._value
        self._value = None
        self._state = LazyState.ABSENT
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        return value


__all__ = ["LazyInstance", "LazyState"]
