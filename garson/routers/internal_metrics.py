from __future__ import annotations

from fastapi import APIRouter, Depends

from garson.core.metrics import request_metrics, turn_metrics
from garson.deps import require_admin_token

router = APIRouter(prefix="/internal/metrics", tags=["internal-metrics"], dependencies=[Depends(require_admin_token)])


@router.get("/turns")
def turn_counters():
    return {"tenants": turn_metrics.snapshot()}


@router.get("/requests")
def request_counters():
    return {"endpoints": request_metrics.snapshot()}
