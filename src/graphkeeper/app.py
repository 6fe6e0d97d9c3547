"""FastAPI control surface for a graphkeeper runtime."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from .config import Settings
from .errors import ConfigurationError, UnsupportedDocumentError
from .observability import MetricsRecorder
from .runtime import GraphKeeper, configure_logging

logger = logging.getLogger(__name__)


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(item) for item in value if str(item).strip()]
    raise HTTPException(status_code=400, detail="Expected a list of paths")


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Request body must be JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return payload


def _required_path(payload: dict[str, Any]) -> str:
    path = str(payload.get("path", "") or "").strip()
    if not path:
        raise HTTPException(status_code=400, detail="A path is required.")
    return path


def create_app(
    *,
    settings: Settings | None = None,
    runtime: GraphKeeper | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    configure_logging()

    runtime = runtime or GraphKeeper(settings)
    logger.info(
        "app.start base_url=%s auto_start=%s",
        runtime.settings.base_url,
        runtime.settings.enable_auto_start_server,
    )

    app = FastAPI(title="graphkeeper")
    app.state.services = runtime

    @app.on_event("startup")
    async def _start_backend() -> None:
        await runtime.startup()

    @app.on_event("shutdown")
    async def _shutdown_runtime() -> None:
        await runtime.aclose()

    def get_runtime(request: Request) -> GraphKeeper:
        return request.app.state.services

    def get_metrics(request: Request) -> MetricsRecorder:
        return get_runtime(request).metrics

    @app.get("/backend/health")
    async def backend_health(keeper: GraphKeeper = Depends(get_runtime)) -> JSONResponse:
        healthy = await keeper.backend_healthy()
        return JSONResponse(
            {
                "healthy": healthy,
                "state": keeper.supervisor.state.value,
                "pid": keeper.supervisor.pid,
                "base_url": keeper.settings.base_url,
            }
        )

    @app.post("/backend/start")
    async def backend_start(keeper: GraphKeeper = Depends(get_runtime)) -> JSONResponse:
        try:
            started = await keeper.start_backend()
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not started:
            raise HTTPException(status_code=502, detail="The knowledge backend could not be launched.")
        return JSONResponse({"started": True, "state": keeper.supervisor.state.value})

    @app.post("/backend/restart", status_code=202)
    async def backend_restart(keeper: GraphKeeper = Depends(get_runtime)) -> JSONResponse:
        await keeper.restart_backend()
        return JSONResponse({"restarting": True}, status_code=202)

    @app.post("/ingest/document")
    async def ingest_document(request: Request, keeper: GraphKeeper = Depends(get_runtime)) -> JSONResponse:
        payload = await _json_body(request)
        path = _required_path(payload)
        try:
            job = await keeper.ingest_document(path)
        except UnsupportedDocumentError as exc:
            raise HTTPException(status_code=415, detail=str(exc)) from exc
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        status_code = 200 if job.succeeded else 502
        return JSONResponse(job.to_dict(), status_code=status_code)

    @app.post("/ingest/folder")
    async def ingest_folder(request: Request, keeper: GraphKeeper = Depends(get_runtime)) -> JSONResponse:
        payload = await _json_body(request)
        path = _required_path(payload)
        try:
            report = await keeper.ingest_folder(path)
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(report.to_dict())

    @app.post("/query")
    async def query_endpoint(request: Request, keeper: GraphKeeper = Depends(get_runtime)) -> JSONResponse:
        payload = await _json_body(request)
        query = str(payload.get("query", "") or "").strip()
        if not query:
            raise HTTPException(status_code=400, detail="Query is required.")
        files = _string_list(payload.get("files"))
        folders = _string_list(payload.get("folders"))
        logger.info("query.endpoint request files=%s folders=%s", len(files), len(folders))
        results = await keeper.query(query, files=files, folders=folders)
        return JSONResponse({"results": [result.to_dict() for result in results]})

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsRecorder = Depends(get_metrics)) -> Response:
        if not metrics.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        try:
            payload = metrics.render_prometheus()
        except RuntimeError as exc:  # pragma: no cover - guarded by prometheus_enabled
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return Response(content=payload, media_type=metrics.prometheus_content_type)

    return app


__all__ = ["create_app"]
