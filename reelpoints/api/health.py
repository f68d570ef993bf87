"""Liveness, readiness and metrics endpoints."""

import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from reelpoints.core.database import check_connection, get_engine, metadata
from reelpoints.core.metrics import METRICS

logger = logging.getLogger("reelpoints")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + every engine table present."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
    try:
        inspector = inspect(get_engine())
        missing = [name for name in metadata.tables if not inspector.has_table(name)]
        if missing:
            detail = f"missing tables: {', '.join(sorted(missing))}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})


@router.get("/metrics")
def metrics_endpoint():
    return Response(content=METRICS.export_prometheus(), media_type="text/plain")
