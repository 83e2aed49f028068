"""Tests for the HTTP surface of the dispute gateway."""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from shared.signing import sign_payload
from dispute_gateway.dependencies import build_services
from dispute_gateway.main import create_app
from dispute_gateway.services.network_client import NetworkClient

DISPUTE_BODY = {
    "transaction": {"id": "txn_api_1", "amount": "100.00", "currency": "USD"},
    "customer": {"id": "cus_ana", "email": "ana@example.com"},
    "merchant": {"id": "mer_cafe", "email": "owner@cafe.example"},
    "requested_resolution": "FULL_REFUND",
    "reason": "Charged twice at the register",
}
REVIEWER = {"X-Reviewer-Id": "rev_kim"}


@pytest.fixture
def client(data_dir, clock):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"networkCaseId": "case_api_1"})

    network = NetworkClient("http://network.test", data_dir, transport=httpx.MockTransport(handler))
    services = build_services(data_dir, network=network, clock=clock)
    with TestClient(create_app(services)) as test_client:
        yield test_client


@pytest.fixture
def dispute_id(client):
    resp = client.post("/disputes", json=DISPUTE_BODY)
    assert resp.status_code == 201
    return resp.json()["id"]


def post_webhook(client, payload: dict, signed: bool = True):
    body = json.dumps(payload).encode()
    headers = {"Content-Type": "application/json"}
    if signed:
        headers["X-Webhook-Signature"] = sign_payload(body)
    return client.post("/webhooks/network", content=body, headers=headers)


class TestDisputesApi:

    def test_create_dispute(self, client):
        resp = client.post("/disputes", json=DISPUTE_BODY)

        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "MERCHANT_REVIEW"
        assert body["transaction"]["amount"] == "100.00"
        assert resp.headers["X-Correlation-Id"]

    def test_duplicate_dispute_conflicts(self, client, dispute_id):
        resp = client.post("/disputes", json=DISPUTE_BODY)

        assert resp.status_code == 409

    def test_partial_refund_without_amount_is_unprocessable(self, client):
        resp = client.post("/disputes", json={**DISPUTE_BODY, "requested_resolution": "PARTIAL_REFUND"})

        assert resp.status_code == 422

    def test_idempotency_key_replays_response(self, client):
        headers = {"Idempotency-Key": "idem_1"}
        first = client.post("/disputes", json=DISPUTE_BODY, headers=headers)
        second = client.post("/disputes", json=DISPUTE_BODY, headers=headers)
        reused = client.post("/disputes", json={**DISPUTE_BODY, "reason": "other"}, headers=headers)

        assert second.status_code == 201
        assert second.json()["id"] == first.json()["id"]
        assert reused.status_code == 422

    def test_unknown_dispute(self, client):
        assert client.get("/disputes/dsp_missing").status_code == 404

    def test_list_filters_by_status(self, client, dispute_id):
        resp = client.get("/disputes", params={"status": "MERCHANT_REVIEW"})

        assert resp.json()["total"] == 1
        assert client.get("/disputes", params={"status": "RESOLVED"}).json()["total"] == 0

    def test_merchant_accepts_and_reviewer_decides(self, client, dispute_id):
        resp = client.post(f"/disputes/{dispute_id}/merchant-response", json={
            "message": "Refunding you now", "accepts_fault": True,
        })
        assert resp.json()["status"] == "UNDER_REVIEW"
        assert resp.json()["proposed_resolution"]["outcome"] == "CUSTOMER_WINS_FULL_REFUND"

        resolved = client.post(f"/disputes/{dispute_id}/decision", json={}, headers=REVIEWER)

        assert resolved.status_code == 200
        assert resolved.json()["status"] == "RESOLVED"
        assert resolved.json()["resolution"]["refund_amount"] == "100.00"

    def test_invalid_transition_conflicts(self, client, dispute_id):
        resp = client.post(f"/disputes/{dispute_id}/close")

        assert resp.status_code == 409
        assert client.get(f"/disputes/{dispute_id}").json()["status"] == "MERCHANT_REVIEW"

    def test_escalate_opens_network_case(self, client, dispute_id):
        resp = client.post(f"/disputes/{dispute_id}/escalate", json={}, headers=REVIEWER)

        assert resp.status_code == 200
        assert resp.json()["status"] == "ESCALATED_TO_NETWORK"
        assert resp.json()["network_case_id"] == "case_api_1"
        assert client.post(f"/disputes/{dispute_id}/escalate", json={}).status_code == 409

    def test_evidence_and_messages(self, client, dispute_id):
        client.post(f"/disputes/{dispute_id}/evidence", json={"uri": "s3://receipt.png"})
        msg = client.post(f"/disputes/{dispute_id}/messages", json={"actor": "MERCHANT", "text": "Looking into it"})

        assert msg.status_code == 201
        events = [e["event"] for e in client.get(f"/disputes/{dispute_id}/timeline").json()["events"]]
        assert events[-2:] == ["evidence.added", "message.posted"]


class TestNetworkWebhooks:

    def test_unsigned_webhook_is_rejected(self, client):
        resp = post_webhook(client, {"type": "dispute.updated", "data": {}}, signed=False)

        assert resp.status_code == 401

    def test_network_ruling_resolves_dispute(self, client, dispute_id):
        client.post(f"/disputes/{dispute_id}/escalate", json={})

        resp = post_webhook(client, {
            "id": "evt_1",
            "type": "dispute.resolved",
            "data": {
                "networkCaseId": "case_api_1",
                "status": "RESOLVED",
                "resolution": "won",
                "refund_amount": "45.00",
                "resolved_at": "2026-03-03T10:00:00Z",
            },
        })

        assert resp.status_code == 200
        assert resp.json()["status"] == "applied"
        dispute = client.get(f"/disputes/{dispute_id}").json()
        assert dispute["status"] == "RESOLVED"
        assert dispute["resolution"]["refund_amount"] == "45.00"

    def test_unknown_case_is_dead_lettered(self, client):
        resp = post_webhook(client, {
            "type": "dispute.updated",
            "data": {"networkCaseId": "case_ghost", "status": "UNDER_REVIEW", "updated_at": "2026-03-03T10:00:00Z"},
        })

        assert resp.json()["status"] == "dead_lettered"
        letters = client.get("/review/dead-letters", headers=REVIEWER).json()
        assert letters["total"] == 1

    def test_unknown_event_type_is_recorded(self, client):
        resp = post_webhook(client, {"type": "dispute.archived", "data": {}})

        assert resp.status_code == 200
        assert resp.json()["status"] == "unmapped"
        assert client.get("/review/unmapped", headers=REVIEWER).json()["total"] == 1


class TestReviewerAccess:

    def test_review_requires_reviewer_header(self, client):
        assert client.get("/review/conflicts").status_code == 401
        assert client.get("/review/conflicts", headers=REVIEWER).status_code == 200

    def test_audit_export(self, client, dispute_id):
        resp = client.get(f"/audit/disputes/{dispute_id}", headers=REVIEWER)

        assert resp.status_code == 200
        assert [e["event"] for e in resp.json()["events"]] == ["dispute.submitted", "merchant.notified"]

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"
        assert client.get("/network/health").json()["circuit_state"] == "closed"

    def test_metrics_record_dispute_requests(self, client, dispute_id):
        client.get(f"/disputes/{dispute_id}/timeline")

        entries = client.get("/metrics").json()["entries"]
        timeline_entry = next(e for e in entries if e["route"].endswith("/timeline"))
        assert timeline_entry["dispute_id"] == dispute_id
        assert timeline_entry["status_code"] == 200
