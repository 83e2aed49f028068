"""Health and Network status endpoints."""

import os
import logging

from fastapi import APIRouter, Depends, Query

from shared.file_store import FileStore
from dispute_gateway.dependencies import DisputeServices, get_services

logger = logging.getLogger("disputerail.health")
router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "healthy", "service": "dispute-gateway"}


@router.get("/network/health")
async def network_health(services: DisputeServices = Depends(get_services)):
    breaker = services.network.breaker
    state = breaker.get_state()
    return {
        "endpoint": services.network.base_url,
        "circuit_state": state.get("circuit_state", "closed"),
        "failure_count": state.get("failure_count", 0),
        "success_count": state.get("success_count", 0),
        "last_failure_at": state.get("last_failure_at"),
        "last_success_at": state.get("last_success_at"),
        "can_execute": breaker.can_execute(),
    }


@router.get("/metrics")
async def get_metrics(
    limit: int = Query(100, le=1000),
    services: DisputeServices = Depends(get_services),
):
    metrics_path = os.path.join(services.data_dir, "metrics", "service_metrics.jsonl")
    entries = FileStore.read_jsonl(metrics_path)
    entries.reverse()
    return {"entries": entries[:limit], "total": len(entries)}
