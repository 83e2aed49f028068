"""Tests for the outbound Network client and its circuit breaker."""

import asyncio

import httpx
import pytest

from shared.models import CircuitState
from dispute_gateway.services.circuit_breaker import CircuitBreaker, NetworkUnavailableError
from dispute_gateway.services.network_client import NetworkClient, NetworkError, case_summary


def client_for(data_dir, handler) -> NetworkClient:
    return NetworkClient("http://network.test", data_dir, api_key="sk_test",
                         transport=httpx.MockTransport(handler))


class TestNetworkClient:

    def test_create_case_sends_summary(self, data_dir, file_dispute):
        dispute = file_dispute()
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["path"] = request.url.path
            return httpx.Response(201, json={"networkCaseId": "case_77"})

        case_id = asyncio.run(client_for(data_dir, handler).create_case(case_summary(dispute)))

        assert case_id == "case_77"
        assert seen == {"auth": "Bearer sk_test", "path": "/disputes"}

    def test_case_creation_is_keyed_by_dispute(self, data_dir, file_dispute):
        dispute = file_dispute()
        keys = []

        def handler(request: httpx.Request) -> httpx.Response:
            keys.append(request.headers["Idempotency-Key"])
            return httpx.Response(201, json={"networkCaseId": "case_77"})

        client = client_for(data_dir, handler)
        asyncio.run(client.create_case(case_summary(dispute)))
        asyncio.run(client.create_case(case_summary(dispute)))

        assert keys == [f"case_{dispute.id}", f"case_{dispute.id}"]

    def test_summary_carries_payment_and_amount(self, file_dispute):
        summary = case_summary(file_dispute(evidence_refs=["s3://receipt.png"]))

        assert summary["network_payment_id"] == "txn_qr_1001"
        assert summary["amount"] == "100.00"
        assert summary["evidence"] == ["s3://receipt.png"]

    def test_missing_case_id_is_an_error(self, data_dir):
        client = client_for(data_dir, lambda request: httpx.Response(200, json={}))

        with pytest.raises(NetworkError):
            asyncio.run(client.create_case({"dispute_id": "dsp_1"}))

    def test_client_errors_do_not_trip_breaker(self, data_dir):
        client = client_for(data_dir, lambda request: httpx.Response(404, text="no such case"))

        with pytest.raises(NetworkError):
            asyncio.run(client.fetch_case_status("case_404"))
        assert client.breaker.get_state()["failure_count"] == 0


class TestCircuitBreaker:

    def test_opens_after_repeated_failures(self, data_dir):
        client = client_for(data_dir, lambda request: httpx.Response(502, text="bad gateway"))

        for _ in range(client.breaker.failure_threshold):
            with pytest.raises(NetworkError):
                asyncio.run(client.fetch_case_status("case_1"))

        assert client.breaker.get_state()["circuit_state"] == CircuitState.OPEN.value
        with pytest.raises(NetworkUnavailableError):
            asyncio.run(client.fetch_case_status("case_1"))

    def test_half_open_after_recovery_timeout(self, data_dir):
        breaker = CircuitBreaker(data_dir)
        breaker.recovery_timeout = -1
        for _ in range(breaker.failure_threshold):
            breaker.record_failure()

        assert breaker.can_execute() is True
        assert breaker.get_state()["circuit_state"] == CircuitState.HALF_OPEN.value

    def test_successes_close_half_open_circuit(self, data_dir):
        breaker = CircuitBreaker(data_dir)
        breaker.recovery_timeout = -1
        for _ in range(breaker.failure_threshold):
            breaker.record_failure()
        breaker.can_execute()

        for _ in range(breaker.half_open_max):
            breaker.record_success()

        assert breaker.get_state()["circuit_state"] == CircuitState.CLOSED.value
