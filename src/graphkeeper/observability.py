"""Metrics for supervisor, query and ingestion events.

Every metric is written as a ``namespace.metric key=value`` log line on the
``graphkeeper.metrics`` logger and, when enabled, mirrored to a private
Prometheus registry.
"""

from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Iterator

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")


class MetricsRecorder:
    """Emit structured metrics via logging and (optionally) Prometheus."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "graphkeeper",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "graphkeeper"
        self._logger = logger or logging.getLogger("graphkeeper.metrics")
        self._prometheus_enabled = prometheus_enabled
        if prometheus_enabled:
            self._registry: CollectorRegistry | None = registry or CollectorRegistry()
        else:
            self._registry = None
        self._collectors: dict[tuple[str, str, tuple[str, ...]], Any] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._prometheus_enabled and self._registry is not None

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def render_prometheus(self) -> bytes:
        if not self.prometheus_enabled:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._registry)

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        """Increment a counter metric."""

        if not self._enabled:
            return
        clean_tags = self._clean(tags)
        self._emit(metric, fields={"value": int(value)}, tags=clean_tags)
        self._observe("counter", metric, clean_tags, float(max(int(value), 0)))

    def set_gauge(self, metric: str, value: float, **tags: Any) -> None:
        """Set the value of a gauge metric."""

        if not self._enabled:
            return
        clean_tags = self._clean(tags)
        self._emit(metric, fields={"value": value}, tags=clean_tags)
        self._observe("gauge", metric, clean_tags, float(value))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        """Emit a timing metric, recording milliseconds to logs."""

        if not self._enabled:
            return
        clean_tags = self._clean(tags)
        duration_ms = max(duration_seconds * 1000.0, 0.0)
        self._emit(metric, fields={"duration_ms": round(duration_ms, 4)}, tags=clean_tags)
        self._observe("histogram", metric, clean_tags, max(duration_seconds, 0.0))

    @contextmanager
    def track_timing(self, metric: str, **tags: Any) -> Iterator[None]:
        """Record how long the wrapped block takes."""

        if not self._enabled:
            yield
            return
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(metric, time.perf_counter() - start, **tags)

    @staticmethod
    def _clean(tags: dict[str, Any]) -> dict[str, Any]:
        return {key: val for key, val in tags.items() if val is not None}

    def _emit(self, metric: str, *, fields: dict[str, Any], tags: dict[str, Any]) -> None:
        segments = [f"{key}={self._stringify(value)}" for key, value in sorted(fields.items())]
        segments += [f"{key}={self._stringify(value)}" for key, value in sorted(tags.items())]
        message = f"{self._namespace}.{metric}"
        if segments:
            message = f"{message} {' '.join(segments)}"
        self._logger.info(message)

    def _observe(self, kind: str, metric: str, tags: dict[str, Any], value: float) -> None:
        if not self.prometheus_enabled:
            return
        label_keys = tuple(sorted(tags))
        label_names = tuple(self._sanitize_label(name) for name in label_keys)
        key = (kind, metric, label_names)
        collector = self._collectors.get(key)
        if collector is None:
            factory = {"counter": Counter, "gauge": Gauge, "histogram": Histogram}[kind]
            collector = factory(
                self._prom_metric_name(metric),
                f"{metric} {kind}",
                labelnames=list(label_names),
                registry=self._registry,
            )
            self._collectors[key] = collector
        target = collector
        if label_names:
            target = collector.labels(
                **{name: self._stringify(tags[raw]) for name, raw in zip(label_names, label_keys)}
            )
        if kind == "counter":
            target.inc(value)
        elif kind == "gauge":
            target.set(value)
        else:
            target.observe(value)

    def _prom_metric_name(self, metric: str) -> str:
        cleaned = _PROM_NAME_RE.sub("_", metric)
        return f"{_PROM_NAME_RE.sub('_', self._namespace)}_{cleaned}".strip("_")

    @staticmethod
    def _sanitize_label(label: str) -> str:
        return _PROM_NAME_RE.sub("_", label) or "label"

    @staticmethod
    def _stringify(value: Any) -> str:
        if isinstance(value, float):
            return f"{value:.4f}" if not value.is_integer() else f"{int(value)}"
        return str(value)


__all__ = ["MetricsRecorder"]
