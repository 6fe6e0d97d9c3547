import io
import logging

import pytest

from graphkeeper.observability import MetricsRecorder


def _capture_logger_output(logger_name: str):
    logger = logging.getLogger(logger_name)
    buffer = io.StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setLevel(logging.INFO)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger, handler, buffer


def test_metrics_recorder_logs_when_enabled() -> None:
    metrics = MetricsRecorder(enabled=True, namespace="graphkeeper.test")
    logger, handler, buffer = _capture_logger_output("graphkeeper.metrics")

    try:
        metrics.increment("backend.spawned")
        metrics.increment("ingestion.submitted", kind="text")
        metrics.record_timing("query.duration", 0.25)
    finally:
        logger.removeHandler(handler)

    output = buffer.getvalue()
    assert "graphkeeper.test.backend.spawned value=1" in output
    assert "graphkeeper.test.ingestion.submitted value=1 kind=text" in output
    assert "graphkeeper.test.query.duration duration_ms=250" in output


def test_metrics_recorder_disabled_suppresses_logs(caplog) -> None:
    metrics = MetricsRecorder(enabled=False)

    with caplog.at_level(logging.INFO, logger="graphkeeper.metrics"):
        metrics.increment("backend.restarts")
        metrics.record_timing("query.duration", 0.1)
        with metrics.track_timing("query.duration"):
            pass

    assert not caplog.records


def test_prometheus_export_renders_counters_and_histograms() -> None:
    metrics = MetricsRecorder(namespace="graphkeeper", prometheus_enabled=True)

    metrics.increment("pipeline.outcome", outcome="completed")
    metrics.increment("pipeline.outcome", outcome="completed")
    with metrics.track_timing("query.duration"):
        pass

    payload = metrics.render_prometheus().decode("utf-8")
    assert 'graphkeeper_pipeline_outcome_total{outcome="completed"} 2.0' in payload
    assert "graphkeeper_query_duration_count 1.0" in payload


def test_prometheus_export_disabled_raises() -> None:
    metrics = MetricsRecorder(prometheus_enabled=False)

    assert metrics.prometheus_enabled is False
    with pytest.raises(RuntimeError):
        metrics.render_prometheus()
