"""Outbox dispatcher - delivers dispute notifications with retry/DLQ."""

import os
import json
import logging
import asyncio
from typing import Optional, Union

import httpx

from shared.config import NOTIFY_CALLBACK_URL
from shared.correlation import correlation_scope
from shared.file_store import FileStore
from shared.models import CustomerParty, Dispute, MerchantParty, utcnow
from shared.signing import sign_payload
from dispute_gateway.services.errors import DisputeNotFoundError
from dispute_gateway.services.storage import DisputeStore

logger = logging.getLogger("dispute-jobs.outbox")

MAX_RETRIES = 3
RETRY_BACKOFF = [1, 3, 10]  # seconds


def recipient_for(party: Union[CustomerParty, MerchantParty]) -> dict:
    if party.kind == "customer":
        return {"role": "customer", "customer_id": party.id, "email": party.email}
    if party.kind == "merchant":
        return {"role": "merchant", "merchant_id": party.id, "email": party.email}
    raise ValueError(f"Unknown party kind {party.kind}")


# Events addressed to one side only; everything else goes to both parties.
SINGLE_RECIPIENT_EVENTS = {
    "dispute.submitted": "merchant",
    "dispute.merchant.notified": "merchant",
    "dispute.merchant.responded": "customer",
}


def recipients_for(dispute: Dispute, event_type: str) -> list[dict]:
    only = SINGLE_RECIPIENT_EVENTS.get(event_type)
    parties = [p for p in dispute.parties() if only is None or p.kind == only]
    return [recipient_for(p) for p in parties]


class OutboxDispatcher:

    def __init__(
        self,
        data_dir: str,
        store: DisputeStore,
        callback_url: str = NOTIFY_CALLBACK_URL,
        backoff: Optional[list[float]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.callback_url = callback_url
        self.backoff = backoff if backoff is not None else RETRY_BACKOFF
        self.transport = transport
        self.outbox_path = os.path.join(data_dir, "outbox", "events.jsonl")
        self.processed_path = os.path.join(data_dir, "outbox", "processed_events.json")
        self.dlq_path = os.path.join(data_dir, "outbox", "dlq.jsonl")

    def build_payload(self, event: dict) -> dict:
        data = dict(event.get("payload", {}))
        dispute_id = data.get("dispute_id")
        if dispute_id:
            try:
                dispute = self.store.load(dispute_id)
            except DisputeNotFoundError:
                logger.warning(f"Outbox event {event.get('event_id')} references missing dispute {dispute_id}")
            else:
                data["status"] = dispute.status.value
                data["recipients"] = recipients_for(dispute, event.get("type", ""))
        return {
            "id": event.get("event_id"),
            "type": event.get("type", ""),
            "data": data,
            "created_at": event.get("created_at", utcnow().isoformat()),
        }

    async def dispatch_event(self, event: dict) -> bool:
        payload = json.dumps(self.build_payload(event), default=str)
        signature = sign_payload(payload)

        for attempt in range(MAX_RETRIES):
            try:
                async with httpx.AsyncClient(transport=self.transport) as client:
                    resp = await client.post(
                        self.callback_url,
                        content=payload,
                        headers={
                            "Content-Type": "application/json",
                            "X-Webhook-Signature": signature,
                            "X-Correlation-Id": event.get("correlation_id") or "",
                        },
                        timeout=10.0,
                    )
                if resp.status_code < 400:
                    return True
                logger.warning(f"Notification callback returned {resp.status_code}, attempt {attempt + 1}")
            except httpx.HTTPError as e:
                logger.warning(f"Notification delivery failed (attempt {attempt + 1}): {e}")

            if attempt < MAX_RETRIES - 1:
                await asyncio.sleep(self.backoff[min(attempt, len(self.backoff) - 1)])

        return False

    async def run_loop(self, interval: int = 5):
        logger.info(f"Outbox dispatcher started (interval={interval}s)")
        while True:
            try:
                await self.process_pending()
            except Exception as e:
                logger.error(f"Outbox dispatcher error: {e}")
            await asyncio.sleep(interval)

    async def process_pending(self) -> int:
        events = FileStore.read_jsonl(self.outbox_path)
        if not events:
            return 0

        processed = FileStore.read_json(self.processed_path, default={})
        pending = [e for e in events if e.get("event_id") not in processed]
        if not pending:
            return 0

        logger.info(f"Processing {len(pending)} outbox events")

        for event in pending:
            event_id = event.get("event_id", "")
            with correlation_scope(event.get("correlation_id")):
                success = await self.dispatch_event(event)

            if success:
                status = "delivered"
                logger.info(f"Delivered outbox event {event_id}")
            else:
                FileStore.append_jsonl(self.dlq_path, {
                    **event,
                    "dlq_reason": "max_retries_exceeded",
                    "dlq_at": utcnow().isoformat(),
                })
                status = "dlq"
                logger.warning(f"Event {event_id} moved to DLQ")
            FileStore.update_json_field(self.processed_path, event_id, {
                "processed_at": utcnow().isoformat(),
                "status": status,
            })

        return len(pending)
