"""Audit router - timeline exports for reviewers."""

import logging

from fastapi import APIRouter, Depends, Query

from shared.models import utcnow
from dispute_gateway.dependencies import DisputeServices, get_services, http_errors

logger = logging.getLogger("disputerail.audit")
router = APIRouter()


@router.get("/disputes/{dispute_id}")
async def export_dispute_timeline(dispute_id: str, services: DisputeServices = Depends(get_services)):
    with http_errors():
        dispute = services.state_machine.get(dispute_id)
        events = services.state_machine.history(dispute_id)
    return {
        "dispute": dispute.model_dump(mode="json"),
        "events": [e.model_dump(mode="json") for e in events],
        "total": len(events),
        "exported_at": utcnow().isoformat(),
    }


@router.get("/processed-events")
async def processed_events(
    limit: int = Query(100, le=1000),
    services: DisputeServices = Depends(get_services),
):
    processed = services.processed.all()
    items = sorted(
        ({"key": key, **entry} for key, entry in processed.items()),
        key=lambda e: e.get("processed_at", ""),
        reverse=True,
    )
    return {"entries": items[:limit], "total": len(items)}
