"""Liveness and readiness endpoints."""

import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from paas_billing.core.database import check_connection
from paas_billing.core.logging import get_request_id, latency_bucket_ms
from paas_billing.features.context import billing_context

logger = logging.getLogger("paas_billing")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = (
    "raw_events",
    "config_versions",
    "pricing_plans",
    "consolidation_history",
    "consolidated_billable_events",
)


@router.get("/")
def root():
    return {"ok": True}


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz(request: Request):
    """Readiness check: DB connectivity + required tables."""
    engine = billing_context(request).engine
    start = time.perf_counter()
    if not check_connection(engine):
        logger.error("readyz.failed", extra={"request_id": get_request_id(), "reason": "database unreachable"})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    inspector = inspect(engine)
    missing = [table for table in REQUIRED_TABLES if not inspector.has_table(table)]
    latency = latency_bucket_ms((time.perf_counter() - start) * 1000)
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning("readyz.failed", extra={"request_id": get_request_id(), "reason": detail})
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    logger.info("readyz.ok", extra={"request_id": get_request_id(), "latency_bucket": latency})
    return {"status": "ok"}
