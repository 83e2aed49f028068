"""Tests for the background jobs."""

import json
import asyncio
from decimal import Decimal

import httpx
import pytest

from shared.file_store import FileStore
from shared.models import (
    CustomerParty, DisputeStatus, MerchantParty, NetworkEvent, NetworkEventKind,
    RequestedResolution, ResolutionOutcome, TransactionRef, Trigger,
)
from shared.signing import validate_signature
from dispute_gateway.services.network_client import NetworkClient
from dispute_gateway.services.notifier import OutboxNotifier
from dispute_gateway.services.reconciliation import ReconcileOutcome
from dispute_gateway.services.state_machine import DisputeStateMachine
from dispute_jobs.dead_letter_replay import DeadLetterReplayJob
from dispute_jobs.network_sync import NetworkStatusSync, status_to_event
from dispute_jobs.outbox_dispatcher import OutboxDispatcher, recipients_for
from dispute_jobs.timeout_scheduler import TimeoutScheduler


class TestTimeoutScheduler:

    def test_fires_only_after_window(self, state_machine, store, file_dispute, clock):
        dispute = file_dispute()
        scheduler = TimeoutScheduler(state_machine)

        assert scheduler.run_once() == []

        clock.advance(hours=49)
        assert scheduler.run_once() == [dispute.id]
        assert store.load(dispute.id).status == DisputeStatus.UNDER_REVIEW
        assert scheduler.run_once() == []


class TestOutboxDispatcher:

    @pytest.fixture
    def outbox_machine(self, store, data_dir, clock):
        return DisputeStateMachine(store, OutboxNotifier(data_dir), data_dir, clock=clock)

    def test_delivers_signed_notifications(self, outbox_machine, store, data_dir):
        dispute = outbox_machine.open_dispute(**_dispute_fields())
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert validate_signature(request.content, request.headers["X-Webhook-Signature"])
            received.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})

        dispatcher = OutboxDispatcher(
            data_dir, store, callback_url="http://notify.test/hook",
            backoff=[0, 0, 0], transport=httpx.MockTransport(handler),
        )

        delivered = asyncio.run(dispatcher.process_pending())

        assert delivered == 2
        by_type = {r["type"]: r for r in received}
        assert set(by_type) == {"dispute.submitted", "dispute.merchant.notified"}
        notified = by_type["dispute.merchant.notified"]["data"]
        assert notified["dispute_id"] == dispute.id
        assert [r["role"] for r in notified["recipients"]] == ["merchant"]
        assert asyncio.run(dispatcher.process_pending()) == 0

    def test_failed_delivery_goes_to_dlq(self, outbox_machine, store, data_dir):
        outbox_machine.open_dispute(**_dispute_fields(contact_merchant_first=False))
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        dispatcher = OutboxDispatcher(
            data_dir, store, callback_url="http://notify.test/hook",
            backoff=[0, 0, 0], transport=httpx.MockTransport(handler),
        )

        asyncio.run(dispatcher.process_pending())

        assert len(calls) == 3
        [dead] = FileStore.read_jsonl(dispatcher.dlq_path)
        assert dead["dlq_reason"] == "max_retries_exceeded"

    def test_recipients_switch_on_party_kind(self, file_dispute):
        dispute = file_dispute()

        assert [r["role"] for r in recipients_for(dispute, "dispute.merchant.responded")] == ["customer"]
        assert [r["role"] for r in recipients_for(dispute, "dispute.resolution.decided")] == ["customer", "merchant"]
        assert recipients_for(dispute, "dispute.merchant.notified")[0]["merchant_id"] == "mer_cafe"


class TestNetworkStatusSync:

    def test_resolved_case_is_reconciled(self, state_machine, store, reconciler, data_dir, file_dispute):
        dispute = file_dispute()
        state_machine.apply_transition(dispute.id, Trigger.ESCALATE, {"network_case_id": "case_sync"})

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/disputes/case_sync"
            return httpx.Response(200, json={
                "status": "RESOLVED", "resolution": "lost", "updated_at": "2026-03-03T09:00:00Z",
            })

        network = NetworkClient("http://network.test", data_dir, transport=httpx.MockTransport(handler))
        sync = NetworkStatusSync(store, network, reconciler)

        [result] = asyncio.run(sync.sync_once())

        assert result.outcome == ReconcileOutcome.APPLIED
        resolved = store.load(dispute.id)
        assert resolved.status == DisputeStatus.RESOLVED
        assert resolved.resolution.outcome == ResolutionOutcome.MERCHANT_WINS
        assert asyncio.run(sync.sync_once()) == []

    def test_network_outage_is_tolerated(self, state_machine, store, reconciler, data_dir, file_dispute):
        dispute = file_dispute()
        state_machine.apply_transition(dispute.id, Trigger.ESCALATE, {"network_case_id": "case_down"})
        network = NetworkClient(
            "http://network.test", data_dir,
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")),
        )

        assert asyncio.run(NetworkStatusSync(store, network, reconciler).sync_once()) == []
        assert network.breaker.get_state()["failure_count"] == 1
        assert store.load(dispute.id).status == DisputeStatus.ESCALATED_TO_NETWORK

    def test_undated_status_is_skipped(self):
        assert status_to_event({"networkCaseId": "case_1", "status": "UNDER_REVIEW"}) is None


class TestDeadLetterReplay:

    def test_replay_matches_late_dispute(self, reconciler, dead_letters, file_dispute, clock):
        event = NetworkEvent(
            network_case_id="case_x", network_payment_id="txn_replay",
            kind=NetworkEventKind.CREATED, external_timestamp=clock.now,
        )
        reconciler.reconcile(event)
        job = DeadLetterReplayJob(reconciler)

        assert [r.outcome for r in job.run_once()] == [ReconcileOutcome.DEAD_LETTERED]

        file_dispute(transaction_id="txn_replay")
        assert [r.outcome for r in job.run_once()] == [ReconcileOutcome.APPLIED]
        assert dead_letters.all() == {}


def _dispute_fields(contact_merchant_first: bool = True) -> dict:
    return dict(
        transaction=TransactionRef(id="txn_outbox", amount=Decimal("25.00")),
        customer=CustomerParty(id="cus_ana", email="ana@example.com"),
        merchant=MerchantParty(id="mer_cafe", email="owner@cafe.example"),
        requested_resolution=RequestedResolution.FULL_REFUND,
        reason="Double charge",
        contact_merchant_first=contact_merchant_first,
    )
