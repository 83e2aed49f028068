"""Review router - conflicts, dead letters and unmapped events for internal reviewers."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from shared.models import ConflictStatus
from dispute_gateway.dependencies import DisputeServices, get_services, http_errors
from dispute_gateway.models.requests import AcknowledgeConflictRequest, ReplayRequest

logger = logging.getLogger("disputerail.review")
router = APIRouter()


@router.get("/conflicts")
async def list_conflicts(
    status: Optional[ConflictStatus] = Query(None),
    dispute_id: Optional[str] = Query(None),
    services: DisputeServices = Depends(get_services),
):
    conflicts = services.conflicts.list_conflicts(status=status, dispute_id=dispute_id)
    return {"conflicts": [c.model_dump(mode="json") for c in conflicts], "total": len(conflicts)}


@router.get("/conflicts/{conflict_id}")
async def get_conflict(conflict_id: str, services: DisputeServices = Depends(get_services)):
    with http_errors():
        conflict = services.conflicts.get(conflict_id)
    return conflict.model_dump(mode="json")


@router.post("/conflicts/{conflict_id}/acknowledge")
async def acknowledge_conflict(
    conflict_id: str,
    req: AcknowledgeConflictRequest,
    x_reviewer_id: str = Header(..., alias="X-Reviewer-Id"),
    services: DisputeServices = Depends(get_services),
):
    with http_errors():
        conflict = services.reconciler.acknowledge_conflict(conflict_id, x_reviewer_id, req.note)
    return conflict.model_dump(mode="json")


@router.get("/dead-letters")
async def list_dead_letters(services: DisputeServices = Depends(get_services)):
    letters = services.dead_letters.all()
    items = [{"key": key, **entry} for key, entry in letters.items()]
    return {"dead_letters": items, "total": len(items)}


@router.post("/dead-letters/replay")
async def replay_dead_letters(
    req: ReplayRequest,
    x_reviewer_id: str = Header(..., alias="X-Reviewer-Id"),
    services: DisputeServices = Depends(get_services),
):
    with http_errors():
        results = services.reconciler.replay_dead_letters(
            transaction_id=req.transaction_id, network_case_id=req.network_case_id,
        )
    logger.info(f"Reviewer {x_reviewer_id} replayed {len(results)} dead letter(s)")
    return {
        "results": [
            {"status": r.outcome.value, "key": r.key, "dispute_id": r.dispute_id, "detail": r.detail}
            for r in results
        ],
        "total": len(results),
    }


@router.get("/unmapped")
async def list_unmapped(
    limit: int = Query(100, le=1000),
    services: DisputeServices = Depends(get_services),
):
    entries = services.conflicts.unmapped()
    entries.reverse()
    return {"entries": entries[:limit], "total": len(entries)}
