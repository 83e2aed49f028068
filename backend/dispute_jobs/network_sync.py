"""Network status sync - polls escalated cases and reconciles what the Network reports."""

import logging
import asyncio
from typing import Optional

from shared.correlation import correlation_scope
from shared.models import DisputeStatus, NetworkEvent, NetworkEventKind
from dispute_gateway.services.circuit_breaker import NetworkUnavailableError
from dispute_gateway.services.network_client import NetworkClient, NetworkError
from dispute_gateway.services.reconciliation import (
    NetworkReconciliationEngine, ReconcileResult,
)
from dispute_gateway.services.storage import DisputeStore

logger = logging.getLogger("dispute-jobs.network-sync")


def status_to_event(case: dict) -> Optional[NetworkEvent]:
    """A polled case status as the equivalent webhook event, or None if undated."""
    if not case.get("updated_at"):
        return None
    status = (case.get("status") or "").upper()
    kind = NetworkEventKind.RESOLVED if status == "RESOLVED" else NetworkEventKind.UPDATED
    return NetworkEvent(
        network_case_id=case["networkCaseId"],
        kind=kind,
        status=case.get("status"),
        resolution=case.get("resolution"),
        refund_amount=case.get("refund_amount"),
        external_timestamp=case["updated_at"],
        payload={"source": "poll", "data": case},
    )


class NetworkStatusSync:

    def __init__(self, store: DisputeStore, network: NetworkClient, reconciler: NetworkReconciliationEngine):
        self.store = store
        self.network = network
        self.reconciler = reconciler

    def escalated_cases(self) -> list[str]:
        cases = []
        for dispute_id in self.store.list_ids():
            dispute = self.store.load(dispute_id)
            if dispute.status == DisputeStatus.ESCALATED_TO_NETWORK and dispute.network_case_id:
                cases.append(dispute.network_case_id)
        return cases

    async def sync_once(self) -> list[ReconcileResult]:
        results = []
        for case_id in self.escalated_cases():
            with correlation_scope(prefix="sync"):
                try:
                    case = await self.network.fetch_case_status(case_id)
                except NetworkUnavailableError as e:
                    logger.warning(f"Network sync paused: {e}")
                    break
                except NetworkError as e:
                    logger.warning(f"Could not fetch Network case {case_id}: {e}")
                    continue

                event = status_to_event(case)
                if event is None:
                    logger.warning(f"Network case {case_id} status carried no timestamp, skipping")
                    continue
                results.append(self.reconciler.reconcile(event))
        return results

    async def run_loop(self, interval: int = 300):
        logger.info(f"Network status sync started (interval={interval}s)")
        while True:
            try:
                await self.sync_once()
            except Exception as e:
                logger.error(f"Network status sync error: {e}")
            await asyncio.sleep(interval)
