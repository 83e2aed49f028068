"""Webhooks router - receives, validates and reconciles Network webhooks."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Header

from shared.signing import validate_signature
from shared.correlation import set_correlation_id
from dispute_gateway.dependencies import DisputeServices, get_services, http_errors
from dispute_gateway.models.responses import ReconcileResponse
from dispute_gateway.services.errors import UnmappedNetworkEventError
from dispute_gateway.services.reconciliation import ReconcileOutcome, parse_webhook_payload

logger = logging.getLogger("disputerail.webhooks")
router = APIRouter()


@router.post("/network", response_model=ReconcileResponse)
async def receive_network_webhook(
    request: Request,
    x_webhook_signature: str = Header("", alias="X-Webhook-Signature"),
    x_correlation_id: str = Header("", alias="X-Correlation-Id"),
    services: DisputeServices = Depends(get_services),
):
    body = await request.body()

    if not x_webhook_signature or not validate_signature(body, x_webhook_signature):
        logger.warning("Rejected Network webhook with missing or invalid signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    if x_correlation_id:
        set_correlation_id(x_correlation_id)

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    try:
        event = parse_webhook_payload(payload)
    except UnmappedNetworkEventError as e:
        # Acknowledge so the Network stops retrying; reviewers see it under /review/unmapped.
        logger.warning(f"Unmapped Network webhook {payload.get('id', '')}: {e}")
        services.conflicts.record_unmapped(payload, str(e))
        return {"status": ReconcileOutcome.UNMAPPED.value, "detail": str(e)}

    with http_errors():
        result = services.reconciler.reconcile(event)

    logger.info(f"Processed Network webhook {payload.get('id', result.key)}: {result.outcome.value}")
    return {
        "status": result.outcome.value,
        "key": result.key,
        "dispute_id": result.dispute_id,
        "detail": result.detail,
        "conflict_id": result.conflict_id,
    }
