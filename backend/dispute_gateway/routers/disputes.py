"""Disputes router - submit, respond to, escalate and resolve disputes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header, Query
from fastapi.responses import JSONResponse

from shared.correlation import get_correlation_id
from shared.models import DISPUTE_TRANSITIONS, DisputeStatus, Trigger
from dispute_gateway.dependencies import DisputeServices, get_services, http_errors
from dispute_gateway.models.requests import (
    AddEvidenceRequest, CreateDisputeRequest, DecisionRequest, EscalateRequest,
    MerchantResponseRequest, PostMessageRequest, RiskFactorsRequest,
)
from dispute_gateway.models.responses import ListResponse, TimelineResponse
from dispute_gateway.services.errors import InvalidForStateError
from dispute_gateway.services.idempotency import IdempotencyConflictError
from dispute_gateway.services.network_client import case_summary

logger = logging.getLogger("disputerail.disputes")
router = APIRouter()


@router.post("", status_code=201)
async def create_dispute(
    req: CreateDisputeRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    services: DisputeServices = Depends(get_services),
):
    request_hash = None
    if idempotency_key:
        request_hash = services.request_keys.compute_hash({
            "action": "create_dispute",
            **req.model_dump(mode="json"),
        })
        try:
            cached = services.request_keys.check(idempotency_key, request_hash)
            if cached:
                return JSONResponse(cached.response, status_code=cached.status_code)
        except IdempotencyConflictError as e:
            raise HTTPException(status_code=422, detail=str(e))

    with http_errors():
        dispute = services.state_machine.open_dispute(
            transaction=req.transaction,
            customer=req.customer,
            merchant=req.merchant,
            requested_resolution=req.requested_resolution,
            reason=req.reason,
            description=req.description,
            requested_amount=req.requested_amount,
            evidence_refs=req.evidence_refs,
            contact_merchant_first=req.contact_merchant_first,
            chat_channel_id=req.chat_channel_id,
            correlation_id=get_correlation_id(),
        )

    # Network events that arrived before the dispute was filed.
    replayed = services.reconciler.replay_dead_letters(transaction_id=req.transaction.id)
    if replayed:
        logger.info(f"Replayed {len(replayed)} dead-lettered event(s) for dispute {dispute.id}")
        dispute = services.state_machine.get(dispute.id)

    body = dispute.model_dump(mode="json")
    if idempotency_key:
        services.request_keys.store(idempotency_key, request_hash, body, 201)
    return body


@router.get("", response_model=ListResponse)
async def list_disputes(
    status: Optional[DisputeStatus] = Query(None),
    transaction_id: Optional[str] = Query(None),
    merchant_id: Optional[str] = Query(None),
    limit: int = Query(50, le=200),
    offset: int = Query(0, ge=0),
    services: DisputeServices = Depends(get_services),
):
    items = [services.store.load(i) for i in services.store.list_ids()]
    if status:
        items = [d for d in items if d.status == status]
    if transaction_id:
        items = [d for d in items if d.transaction.id == transaction_id]
    if merchant_id:
        items = [d for d in items if d.merchant.id == merchant_id]

    items.sort(key=lambda d: d.created_at, reverse=True)
    total = len(items)
    page = [d.model_dump(mode="json") for d in items[offset:offset + limit]]
    return {"items": page, "total": total, "limit": limit, "offset": offset}


@router.get("/timeouts/due")
async def due_timeouts(services: DisputeServices = Depends(get_services)):
    due = services.state_machine.due_transitions()
    return {"dispute_ids": due, "total": len(due)}


@router.get("/{dispute_id}")
async def get_dispute(dispute_id: str, services: DisputeServices = Depends(get_services)):
    with http_errors():
        dispute = services.state_machine.get(dispute_id)
    return dispute.model_dump(mode="json")


@router.get("/{dispute_id}/timeline", response_model=TimelineResponse)
async def get_timeline(dispute_id: str, services: DisputeServices = Depends(get_services)):
    with http_errors():
        events = services.state_machine.history(dispute_id)
    return {"dispute_id": dispute_id, "events": events, "total": len(events)}


@router.get("/{dispute_id}/proposal")
async def get_proposal(dispute_id: str, services: DisputeServices = Depends(get_services)):
    with http_errors():
        dispute = services.state_machine.get(dispute_id)
        decision = services.state_machine.evaluate(dispute)
    return decision.model_dump(mode="json")


@router.post("/{dispute_id}/merchant-response")
async def merchant_response(
    dispute_id: str,
    req: MerchantResponseRequest,
    services: DisputeServices = Depends(get_services),
):
    with http_errors():
        dispute = services.state_machine.apply_transition(
            dispute_id, Trigger.MERCHANT_RESPONDED, req.model_dump(),
        )
    return dispute.model_dump(mode="json")


@router.post("/{dispute_id}/evidence")
async def add_evidence(
    dispute_id: str,
    req: AddEvidenceRequest,
    services: DisputeServices = Depends(get_services),
):
    with http_errors():
        dispute = services.state_machine.add_evidence(
            dispute_id, req.uri, req.actor, qr_verification=req.qr_verification,
        )
    return dispute.model_dump(mode="json")


@router.post("/{dispute_id}/risk-factors")
async def add_risk_factors(
    dispute_id: str,
    req: RiskFactorsRequest,
    services: DisputeServices = Depends(get_services),
):
    with http_errors():
        dispute = services.state_machine.add_risk_factors(dispute_id, req.factors)
    return dispute.model_dump(mode="json")


@router.post("/{dispute_id}/messages", status_code=201)
async def post_message(
    dispute_id: str,
    req: PostMessageRequest,
    services: DisputeServices = Depends(get_services),
):
    with http_errors():
        event = services.state_machine.post_message(dispute_id, req.actor, req.text)
    return event.model_dump(mode="json")


@router.post("/{dispute_id}/escalate")
async def escalate_dispute(
    dispute_id: str,
    req: EscalateRequest,
    x_reviewer_id: Optional[str] = Header(None, alias="X-Reviewer-Id"),
    services: DisputeServices = Depends(get_services),
):
    with http_errors():
        dispute = services.state_machine.get(dispute_id)
        if Trigger.ESCALATE not in DISPUTE_TRANSITIONS.get(dispute.status, {}):
            raise InvalidForStateError(dispute_id, dispute.status.value, Trigger.ESCALATE.value)

        case_id = req.network_case_id or dispute.network_case_id
        if not case_id:
            case_id = await services.network.create_case(case_summary(dispute))

        dispute = services.state_machine.apply_transition(dispute_id, Trigger.ESCALATE, {
            "network_case_id": case_id,
            "reviewer": x_reviewer_id,
        })

    replayed = services.reconciler.replay_dead_letters(network_case_id=case_id)
    if replayed:
        dispute = services.state_machine.get(dispute_id)
    logger.info(f"Dispute {dispute_id} escalated to Network case {case_id}")
    return dispute.model_dump(mode="json")


@router.post("/{dispute_id}/decision")
async def decide_dispute(
    dispute_id: str,
    req: DecisionRequest,
    x_reviewer_id: Optional[str] = Header(None, alias="X-Reviewer-Id"),
    services: DisputeServices = Depends(get_services),
):
    payload = req.model_dump(exclude_none=True)
    payload["reviewer"] = x_reviewer_id
    with http_errors():
        dispute = services.state_machine.apply_transition(dispute_id, Trigger.INTERNAL_DECISION, payload)
    return dispute.model_dump(mode="json")


@router.post("/{dispute_id}/close")
async def close_dispute(
    dispute_id: str,
    x_reviewer_id: Optional[str] = Header(None, alias="X-Reviewer-Id"),
    services: DisputeServices = Depends(get_services),
):
    with http_errors():
        dispute = services.state_machine.apply_transition(
            dispute_id, Trigger.ADMIN_CLOSE, {"reviewer": x_reviewer_id},
        )
    return dispute.model_dump(mode="json")
