"""Tool metrics JSON endpoints."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from toolrail.metrics.collector import MetricsCollector

logger = logging.getLogger(__name__)

router = APIRouter(tags=["metrics"])


def _collector(request: Request) -> MetricsCollector | None:
    return getattr(request.app.state, "metrics", None)


@router.get("/api/tools/metrics", response_model=None)
async def tool_metrics(request: Request) -> dict[str, Any] | JSONResponse:
    """Serve the collector summary as JSON."""
    collector = _collector(request)
    if collector is None:
        return JSONResponse(
            status_code=503,
            content={"status": "error", "error": "Metrics collector not configured"},
        )
    try:
        summary = collector.summary()
    except Exception as e:
        logger.exception("Failed to build metrics summary")
        return JSONResponse(status_code=500, content={"status": "error", "error": str(e)})
    return {"status": "ok", "metrics": summary}


@router.get("/api/tools/metrics/sessions/{session_id}")
async def session_metrics(session_id: str, request: Request) -> dict[str, Any]:
    """Serve the call trace of one active session."""
    collector = _collector(request)
    trace = collector.get_session_metrics(session_id) if collector is not None else None
    if trace is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return {"status": "ok", "session": trace}


def create_app(metrics: MetricsCollector) -> FastAPI:
    """Minimal app exposing *metrics*; hosts may mount :data:`router` instead."""
    from toolrail import __version__

    app = FastAPI(title="toolrail", description="Tool dispatch metrics", version=__version__)
    app.state.metrics = metrics
    app.include_router(router)
    return app
