"""Tests for the Network reconciliation engine."""

import pytest
from datetime import timedelta, timezone
from decimal import Decimal

from shared.models import (
    ConflictStatus, DecidedBy, DisputeStatus, NetworkEvent, NetworkEventKind,
    ResolutionOutcome, Trigger,
)
from dispute_gateway.services.errors import UnmappedNetworkEventError
from dispute_gateway.services.reconciliation import ReconcileOutcome, parse_webhook_payload


@pytest.fixture
def network_event(clock):
    def _event(kind, hours=1, case_id="case_1", payment_id=None, **fields):
        return NetworkEvent(
            network_case_id=case_id,
            network_payment_id=payment_id,
            kind=kind,
            external_timestamp=clock.now + timedelta(hours=hours),
            **fields,
        )
    return _event


@pytest.fixture
def escalated(state_machine, file_dispute):
    dispute = file_dispute()
    return state_machine.apply_transition(dispute.id, Trigger.ESCALATE, {"network_case_id": "case_1"})


def events(state_machine, dispute_id):
    return [e.event for e in state_machine.history(dispute_id)]


class TestNetworkRulings:

    def test_network_ruling_resolves_escalated_dispute(self, reconciler, store, escalated, network_event):
        event = network_event(NetworkEventKind.RESOLVED, status="RESOLVED", resolution="won",
                              refund_amount=Decimal("45.00"))

        result = reconciler.reconcile(event)

        assert result.outcome == ReconcileOutcome.APPLIED
        dispute = store.load(escalated.id)
        assert dispute.status == DisputeStatus.RESOLVED
        assert dispute.resolution.outcome == ResolutionOutcome.CUSTOMER_WINS_FULL_REFUND
        assert dispute.resolution.refund_amount == Decimal("45.00")
        assert dispute.resolution.decided_by == DecidedBy.NETWORK
        assert dispute.network_resolution == "won"

    def test_lost_ruling_means_merchant_wins(self, reconciler, store, escalated, network_event):
        reconciler.reconcile(network_event(NetworkEventKind.RESOLVED, resolution="lost"))

        assert store.load(escalated.id).resolution.outcome == ResolutionOutcome.MERCHANT_WINS

    def test_late_network_ruling_raises_conflict(self, reconciler, state_machine, store, conflicts,
                                                 escalated, network_event):
        reconciler.reconcile(network_event(NetworkEventKind.EVIDENCE_REQUESTED, hours=1))
        assert store.load(escalated.id).status == DisputeStatus.INTERNAL_REVIEW
        state_machine.apply_transition(escalated.id, Trigger.INTERNAL_DECISION, {"outcome": "MERCHANT_WINS"})
        internal = store.load(escalated.id).resolution
        timeline_before = len(state_machine.history(escalated.id))

        result = reconciler.reconcile(network_event(
            NetworkEventKind.RESOLVED, hours=3, resolution="won", refund_amount=Decimal("100.00"),
        ))

        assert result.outcome == ReconcileOutcome.CONFLICT
        assert store.load(escalated.id).resolution == internal
        assert len(state_machine.history(escalated.id)) == timeline_before + 1
        assert events(state_machine, escalated.id)[-1] == "network.resolution_received"
        [conflict] = conflicts.list_conflicts()
        assert conflict.id == result.conflict_id
        assert conflict.status == ConflictStatus.OPEN
        assert conflict.network_resolution == "won"

    def test_agreeing_rulings_raise_no_conflict(self, reconciler, state_machine, conflicts,
                                                escalated, network_event):
        reconciler.reconcile(network_event(NetworkEventKind.EVIDENCE_REQUESTED, hours=1))
        state_machine.apply_transition(escalated.id, Trigger.INTERNAL_DECISION, {
            "outcome": "CUSTOMER_WINS_FULL_REFUND", "refund_amount": "100.00",
        })

        result = reconciler.reconcile(network_event(NetworkEventKind.RESOLVED, hours=3, resolution="won"))

        assert result.outcome == ReconcileOutcome.INFORMATIONAL
        assert conflicts.list_conflicts() == []

    def test_acknowledge_conflict(self, reconciler, state_machine, escalated, network_event):
        reconciler.reconcile(network_event(NetworkEventKind.EVIDENCE_REQUESTED, hours=1))
        state_machine.apply_transition(escalated.id, Trigger.INTERNAL_DECISION, {"outcome": "MERCHANT_WINS"})
        result = reconciler.reconcile(network_event(NetworkEventKind.RESOLVED, hours=3, resolution="won"))

        acknowledged = reconciler.acknowledge_conflict(result.conflict_id, "rev_kim", "Refund issued manually")

        assert acknowledged.status == ConflictStatus.ACKNOWLEDGED
        assert reconciler.open_conflicts() == []


class TestIdempotency:

    def test_same_event_twice_appends_once(self, reconciler, state_machine, escalated, network_event):
        event = network_event(NetworkEventKind.UPDATED, status="UNDER_REVIEW")
        before = len(state_machine.history(escalated.id))

        first = reconciler.reconcile(event)
        second = reconciler.reconcile(event.model_copy())

        assert first.outcome == ReconcileOutcome.APPLIED
        assert second.outcome == ReconcileOutcome.DUPLICATE
        assert len(state_machine.history(escalated.id)) == before + 1

    def test_duplicate_ruling_leaves_dispute_alone(self, reconciler, store, escalated, network_event):
        event = network_event(NetworkEventKind.RESOLVED, resolution="won")
        reconciler.reconcile(event)
        version = store.load(escalated.id).version

        assert reconciler.reconcile(event).outcome == ReconcileOutcome.DUPLICATE
        assert store.load(escalated.id).version == version


class TestDeadLetters:

    def test_unknown_case_is_dead_lettered(self, reconciler, dead_letters, network_event):
        event = network_event(NetworkEventKind.UPDATED, case_id="case_unknown", status="UNDER_REVIEW")

        result = reconciler.reconcile(event)
        reconciler.reconcile(event)

        assert result.outcome == ReconcileOutcome.DEAD_LETTERED
        assert dead_letters.all()[event.idempotency_key()]["attempts"] == 2

    def test_unmatched_refund_is_kept(self, reconciler, dead_letters, network_event):
        event = network_event(NetworkEventKind.REFUNDED, case_id=None, payment_id="txn_nobody",
                              refund_amount=Decimal("12.00"))

        assert reconciler.reconcile(event).outcome == ReconcileOutcome.DEAD_LETTERED
        assert event.idempotency_key() in dead_letters.all()

    def test_case_created_before_dispute_is_replayed(self, reconciler, store, dead_letters,
                                                     file_dispute, network_event):
        event = network_event(NetworkEventKind.CREATED, hours=-1, case_id="case_early",
                              payment_id="txn_early", status="SUBMITTED")
        assert reconciler.reconcile(event).outcome == ReconcileOutcome.DEAD_LETTERED

        dispute = file_dispute(transaction_id="txn_early")
        [result] = reconciler.replay_dead_letters(transaction_id="txn_early")

        assert result.outcome == ReconcileOutcome.APPLIED
        stored = store.load(dispute.id)
        assert stored.status == DisputeStatus.ESCALATED_TO_NETWORK
        assert stored.network_case_id == "case_early"
        assert dead_letters.all() == {}

    def test_matched_refund_is_recorded(self, reconciler, state_machine, store, file_dispute, network_event):
        dispute = file_dispute()

        result = reconciler.reconcile(network_event(
            NetworkEventKind.REFUNDED, case_id=None, payment_id="txn_qr_1001", refund_amount=Decimal("20.00"),
        ))

        assert result.outcome == ReconcileOutcome.INFORMATIONAL
        assert events(state_machine, dispute.id)[-1] == "network.refund_recorded"
        assert store.load(dispute.id).status == DisputeStatus.MERCHANT_REVIEW


class TestUnmappedAndStale:

    def test_unmapped_status_is_recorded_and_ignored(self, reconciler, store, conflicts, escalated, network_event):
        result = reconciler.reconcile(network_event(NetworkEventKind.UPDATED, status="ARBITRATION"))

        assert result.outcome == ReconcileOutcome.UNMAPPED
        assert store.load(escalated.id).status == DisputeStatus.ESCALATED_TO_NETWORK
        assert len(conflicts.unmapped()) == 1

    def test_partial_ruling_without_amount(self, reconciler, store, escalated, network_event):
        result = reconciler.reconcile(network_event(NetworkEventKind.RESOLVED, resolution="partial"))

        assert result.outcome == ReconcileOutcome.UNMAPPED
        assert store.load(escalated.id).resolution is None

    def test_refund_above_transaction_amount(self, reconciler, store, escalated, network_event):
        result = reconciler.reconcile(network_event(
            NetworkEventKind.RESOLVED, resolution="won", refund_amount=Decimal("150.00"),
        ))

        assert result.outcome == ReconcileOutcome.UNMAPPED
        assert store.load(escalated.id).status == DisputeStatus.ESCALATED_TO_NETWORK

    def test_older_status_update_is_stale(self, reconciler, store, escalated, network_event):
        reconciler.reconcile(network_event(NetworkEventKind.UPDATED, hours=2, status="UNDER_REVIEW"))

        result = reconciler.reconcile(network_event(NetworkEventKind.UPDATED, hours=1, status="EVIDENCE_REQUIRED"))

        assert result.outcome == ReconcileOutcome.INFORMATIONAL
        assert result.detail == "stale event"
        assert store.load(escalated.id).network_status == "UNDER_REVIEW"

    def test_evidence_request_older_than_reescalation_is_stale(self, reconciler, state_machine, store, clock,
                                                              escalated, network_event):
        reconciler.reconcile(network_event(NetworkEventKind.EVIDENCE_REQUESTED, hours=2))
        assert store.load(escalated.id).status == DisputeStatus.INTERNAL_REVIEW
        clock.advance(hours=11)
        state_machine.apply_transition(escalated.id, Trigger.ESCALATE, {"network_case_id": "case_1"})

        result = reconciler.reconcile(network_event(NetworkEventKind.EVIDENCE_REQUESTED, hours=-6))

        assert result.outcome == ReconcileOutcome.INFORMATIONAL
        assert result.detail == "stale event"
        assert store.load(escalated.id).status == DisputeStatus.ESCALATED_TO_NETWORK
        assert "network.stale_event" in events(state_machine, escalated.id)

    def test_case_event_without_case_id_is_unmapped(self, reconciler, store, conflicts, file_dispute, network_event):
        dispute = file_dispute()

        result = reconciler.reconcile(network_event(
            NetworkEventKind.CREATED, case_id=None, payment_id="txn_qr_1001", status="SUBMITTED",
        ))

        assert result.outcome == ReconcileOutcome.UNMAPPED
        stored = store.load(dispute.id)
        assert stored.status == DisputeStatus.MERCHANT_REVIEW
        assert stored.network_case_id is None
        assert len(conflicts.unmapped()) == 1

    def test_update_after_resolution_is_out_of_sequence(self, reconciler, store, escalated, network_event):
        reconciler.reconcile(network_event(NetworkEventKind.RESOLVED, hours=1, resolution="lost"))

        result = reconciler.reconcile(network_event(NetworkEventKind.UPDATED, hours=2, status="UNDER_REVIEW"))

        assert result.outcome == ReconcileOutcome.INFORMATIONAL
        assert store.load(escalated.id).status == DisputeStatus.RESOLVED

    def test_message_lands_in_timeline(self, reconciler, state_machine, store, escalated, network_event):
        event = network_event(NetworkEventKind.MESSAGE, payload={"data": {"message": "Need receipt"}})

        result = reconciler.reconcile(event)

        assert result.outcome == ReconcileOutcome.APPLIED
        latest = state_machine.timeline.latest(escalated.id)
        assert latest.event == "network.message"
        assert latest.details["message"] == "Need receipt"
        assert store.load(escalated.id).status == DisputeStatus.ESCALATED_TO_NETWORK


class TestParseWebhookPayload:

    def test_resolved_payload(self):
        event = parse_webhook_payload({
            "id": "evt_1",
            "type": "dispute.resolved",
            "data": {
                "networkCaseId": "case_1",
                "status": "RESOLVED",
                "resolution": "won",
                "refund_amount": "45.00",
                "resolved_at": "2026-03-02T10:00:00Z",
            },
        })

        assert event.kind == NetworkEventKind.RESOLVED
        assert event.network_case_id == "case_1"
        assert event.refund_amount == Decimal("45.00")
        assert event.external_timestamp.tzinfo is not None

    def test_refund_payload_matches_by_payment(self):
        event = parse_webhook_payload({
            "type": "refund.succeeded",
            "data": {"networkPaymentId": "txn_9", "amount": 5, "created_at": "2026-03-02T10:00:00"},
        })

        assert event.kind == NetworkEventKind.REFUNDED
        assert event.network_payment_id == "txn_9"
        assert event.external_timestamp.tzinfo == timezone.utc
        assert event.idempotency_key().startswith("payment:txn_9|REFUNDED|")

    def test_unknown_type(self):
        with pytest.raises(UnmappedNetworkEventError):
            parse_webhook_payload({"type": "dispute.archived", "data": {"updated_at": "2026-03-02T10:00:00Z"}})

    def test_missing_timestamp(self):
        with pytest.raises(UnmappedNetworkEventError):
            parse_webhook_payload({"type": "dispute.updated", "data": {"networkCaseId": "case_1"}})
