"""Outbound calls to the payment Network: open a case, fetch its status."""

import logging
from typing import Optional

import httpx

from shared.correlation import get_correlation_id
from shared.models import Dispute
from dispute_gateway.services.circuit_breaker import CircuitBreaker, NetworkUnavailableError

logger = logging.getLogger("disputerail.network_client")


class NetworkError(Exception):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Network error: {detail}")


class NetworkTimeoutError(NetworkError):
    def __init__(self):
        super().__init__("Request timed out")


def case_summary(dispute: Dispute) -> dict:
    return {
        "dispute_id": dispute.id,
        "network_payment_id": dispute.transaction.id,
        "amount": str(dispute.transaction.amount),
        "currency": dispute.transaction.currency,
        "reason": dispute.reason,
        "description": dispute.description,
        "requested_resolution": dispute.requested_resolution.value,
        "evidence": list(dispute.evidence_refs),
        "merchant_id": dispute.merchant.id,
        "customer_id": dispute.customer.id,
    }


class NetworkClient:

    def __init__(self, base_url: str, data_dir: str, api_key: Optional[str] = None,
                 timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport
        self.breaker = CircuitBreaker(data_dir)

    def _headers(self, idempotency_key: Optional[str] = None) -> dict:
        headers = {"X-Correlation-Id": get_correlation_id()}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, idempotency_key: Optional[str] = None, **kwargs) -> dict:
        if not self.breaker.can_execute():
            raise NetworkUnavailableError(self.base_url)
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                resp = await client.request(
                    method, f"{self.base_url}{path}",
                    headers=self._headers(idempotency_key), timeout=self.timeout, **kwargs,
                )
        except httpx.TimeoutException:
            self.breaker.record_failure()
            raise NetworkTimeoutError()
        except httpx.TransportError as e:
            self.breaker.record_failure()
            raise NetworkError(str(e))

        if resp.status_code >= 500:
            self.breaker.record_failure()
            raise NetworkError(f"{resp.status_code} {resp.text}")
        if resp.status_code >= 400:
            self.breaker.record_success()
            raise NetworkError(f"{resp.status_code} {resp.text}")
        self.breaker.record_success()
        return resp.json()

    async def create_case(self, summary: dict) -> str:
        # The Network answers a repeated key with the case it already opened.
        data = await self._request(
            "POST", "/disputes", idempotency_key=f"case_{summary['dispute_id']}", json=summary,
        )
        case_id = data.get("networkCaseId") or data.get("id")
        if not case_id:
            raise NetworkError("case creation response carried no case id")
        logger.info(f"Network opened case {case_id} for dispute {summary.get('dispute_id')}")
        return case_id

    async def fetch_case_status(self, network_case_id: str) -> dict:
        data = await self._request("GET", f"/disputes/{network_case_id}")
        return {
            "networkCaseId": network_case_id,
            "status": data.get("status"),
            "resolution": data.get("resolution"),
            "refund_amount": data.get("refund_amount"),
            "updated_at": data.get("updated_at") or data.get("resolved_at"),
        }
