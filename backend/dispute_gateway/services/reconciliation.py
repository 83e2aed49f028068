"""Network reconciliation - inbound Network events to lifecycle triggers.

This is the only module that knows the Network's vocabulary. Events are
applied at most once per (case, kind, external timestamp) key; events for
unknown disputes are dead-lettered, unmapped statuses are recorded and
ignored, and a Network ruling never overwrites an internal one.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from shared.models import (
    ConflictStatus, DecidedBy, Dispute, DisputeStatus, NetworkEvent, NetworkEventKind, Resolution,
    ResolutionConflict, ResolutionOutcome, Trigger,
)
from dispute_gateway.services import fraud
from dispute_gateway.services.conflicts import ConflictRegistry
from dispute_gateway.services.errors import UnmappedNetworkEventError
from dispute_gateway.services.idempotency import DeadLetterStore, ProcessedEventLog
from dispute_gateway.services.resolution import round_to_minor_unit
from dispute_gateway.services.state_machine import (
    DisputeStateMachine, NetworkEffect, network_target,
)
from dispute_gateway.services.storage import DisputeStore

logger = logging.getLogger("disputerail.reconciliation")

# Network case status -> internal status
NETWORK_STATUS_MAP: dict[str, DisputeStatus] = {
    "SUBMITTED": DisputeStatus.ESCALATED_TO_NETWORK,
    "UNDER_REVIEW": DisputeStatus.ESCALATED_TO_NETWORK,
    "MERCHANT_RESPONDED": DisputeStatus.ESCALATED_TO_NETWORK,
    "EVIDENCE_REQUIRED": DisputeStatus.ESCALATED_TO_NETWORK,
    "RESOLVED": DisputeStatus.RESOLVED,
}

NETWORK_RESOLUTION_MAP: dict[str, ResolutionOutcome] = {
    "won": ResolutionOutcome.CUSTOMER_WINS_FULL_REFUND,
    "lost": ResolutionOutcome.MERCHANT_WINS,
    "partial": ResolutionOutcome.CUSTOMER_WINS_PARTIAL_REFUND,
}

WEBHOOK_TYPE_MAP: dict[str, NetworkEventKind] = {
    "dispute.created": NetworkEventKind.CREATED,
    "dispute.updated": NetworkEventKind.UPDATED,
    "dispute.resolved": NetworkEventKind.RESOLVED,
    "dispute.evidence_requested": NetworkEventKind.EVIDENCE_REQUESTED,
    "dispute.message": NetworkEventKind.MESSAGE,
    "refund.succeeded": NetworkEventKind.REFUNDED,
}

# Kinds matched by the originating payment rather than the case id.
PAYMENT_MATCHED_KINDS = frozenset({NetworkEventKind.CREATED, NetworkEventKind.REFUNDED})


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    INFORMATIONAL = "informational"
    CONFLICT = "conflict"
    UNMAPPED = "unmapped"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    key: str
    dispute_id: Optional[str] = None
    detail: str = ""
    conflict_id: Optional[str] = None


def _first(data: dict, *names: str) -> Any:
    for name in names:
        value = data.get(name)
        if value not in (None, ""):
            return value
    return None


def parse_webhook_payload(payload: dict) -> NetworkEvent:
    """Translate the Network's webhook envelope into a NetworkEvent."""
    event_type = payload.get("type", "")
    kind = WEBHOOK_TYPE_MAP.get(event_type)
    if kind is None:
        raise UnmappedNetworkEventError(f"Unknown Network event type '{event_type}'")

    data = payload.get("data") or {}
    timestamp = _first(data, "resolved_at", "updated_at", "created_at") or payload.get("timestamp")
    if timestamp is None:
        raise UnmappedNetworkEventError(f"Network event '{event_type}' carries no timestamp")

    refund_amount = _first(data, "refund_amount", "amount")
    try:
        refund = Decimal(str(refund_amount)) if refund_amount is not None else None
    except InvalidOperation:
        raise UnmappedNetworkEventError(f"Unparseable refund amount '{refund_amount}'")

    return NetworkEvent(
        network_case_id=_first(data, "networkCaseId", "network_case_id"),
        network_payment_id=_first(data, "networkPaymentId", "network_payment_id", "payment_id"),
        kind=kind,
        status=data.get("status"),
        resolution=data.get("resolution"),
        refund_amount=refund,
        external_timestamp=timestamp,
        payload=payload,
    )


class NetworkReconciliationEngine:

    def __init__(
        self,
        state_machine: DisputeStateMachine,
        store: DisputeStore,
        processed: ProcessedEventLog,
        dead_letters: DeadLetterStore,
        conflicts: ConflictRegistry,
    ):
        self.state_machine = state_machine
        self.store = store
        self.processed = processed
        self.dead_letters = dead_letters
        self.conflicts = conflicts

    def reconcile(self, event: NetworkEvent) -> ReconcileResult:
        key = event.idempotency_key()
        if self.processed.seen(key):
            logger.info(f"Duplicate Network event {key}, skipping")
            return ReconcileResult(ReconcileOutcome.DUPLICATE, key)

        dispute = self._lookup(event)
        if dispute is None:
            self.dead_letters.put(event, "no matching dispute")
            return ReconcileResult(ReconcileOutcome.DEAD_LETTERED, key, detail="no matching dispute")

        with self.state_machine.locked(dispute.id):
            if self.processed.seen(key):
                return ReconcileResult(ReconcileOutcome.DUPLICATE, key, dispute.id)
            dispute = self.store.load(dispute.id)
            result = self._apply(dispute, event, key)
            self.processed.mark(key, result.outcome.value, dispute.id)

        if key in self.dead_letters.all():
            self.dead_letters.remove(key)
        logger.info(f"Reconciled {key} against {dispute.id}: {result.outcome.value}")
        return result

    def replay_dead_letters(
        self,
        transaction_id: Optional[str] = None,
        network_case_id: Optional[str] = None,
    ) -> list[ReconcileResult]:
        results = []
        for event in self.dead_letters.events():
            if transaction_id and event.network_payment_id != transaction_id:
                continue
            if network_case_id and event.network_case_id != network_case_id:
                continue
            results.append(self.reconcile(event))
        return results

    def open_conflicts(self) -> list[ResolutionConflict]:
        return self.conflicts.list_conflicts(status=ConflictStatus.OPEN)

    def acknowledge_conflict(self, conflict_id: str, reviewer: str, note: Optional[str] = None) -> ResolutionConflict:
        """Mark a conflict adjudicated; the stored resolution is left as it is."""
        return self.conflicts.acknowledge(conflict_id, reviewer, note)

    def _lookup(self, event: NetworkEvent) -> Optional[Dispute]:
        if event.kind in PAYMENT_MATCHED_KINDS:
            if event.network_payment_id:
                dispute = self.store.find_by_transaction_id(event.network_payment_id)
                if dispute is not None:
                    return dispute
            return None
        if event.network_case_id:
            return self.store.find_by_network_case_id(event.network_case_id)
        return None

    # --- application -------------------------------------------------------

    def _apply(self, dispute: Dispute, event: NetworkEvent, key: str) -> ReconcileResult:
        if event.kind == NetworkEventKind.MESSAGE:
            message = {"message": (event.payload.get("data") or {}).get("message")}
            if dispute.is_terminal:
                self._informational(dispute, event, "network.message", message)
                return ReconcileResult(ReconcileOutcome.INFORMATIONAL, key, dispute.id, "message on closed dispute")
            return self._transition(dispute, event, key, NetworkEffect.MESSAGE, "network.message", message)

        if event.kind == NetworkEventKind.REFUNDED:
            self._informational(dispute, event, "network.refund_recorded", {
                "refund_amount": _amount_str(event.refund_amount),
            })
            return ReconcileResult(ReconcileOutcome.INFORMATIONAL, key, dispute.id, "refund recorded")

        if event.kind == NetworkEventKind.RESOLVED:
            return self._apply_resolution(dispute, event, key)

        if event.kind == NetworkEventKind.EVIDENCE_REQUESTED:
            if self._is_stale(dispute, event, NetworkEffect.REQUEST_EVIDENCE):
                return self._stale(dispute, event, key)
            return self._transition(dispute, event, key, NetworkEffect.REQUEST_EVIDENCE,
                                    "network.evidence_requested", {})

        raw_status = (event.status or ("SUBMITTED" if event.kind == NetworkEventKind.CREATED else "")).upper()
        mapped = NETWORK_STATUS_MAP.get(raw_status)
        if mapped is None:
            return self._unmapped(dispute, event, key, f"unmapped Network status '{event.status}'")
        if mapped == DisputeStatus.RESOLVED:
            return self._apply_resolution(dispute, event, key)

        if event.kind == NetworkEventKind.CREATED:
            if not (event.network_case_id or dispute.network_case_id):
                return self._unmapped(dispute, event, key, "Network case event without a case id")
            if dispute.network_case_id and event.network_case_id and dispute.network_case_id != event.network_case_id:
                self._informational(dispute, event, "network.case_mismatch", {
                    "linked_case_id": dispute.network_case_id,
                })
                return ReconcileResult(ReconcileOutcome.INFORMATIONAL, key, dispute.id, "case id mismatch")
        elif self._is_stale(dispute, event, NetworkEffect.ESCALATE):
            return self._stale(dispute, event, key)

        event_name = "network.case_created" if event.kind == NetworkEventKind.CREATED else "network.status_changed"
        return self._transition(dispute, event, key, NetworkEffect.ESCALATE, event_name, {})

    def _apply_resolution(self, dispute: Dispute, event: NetworkEvent, key: str) -> ReconcileResult:
        resolution, problem = self.map_resolution(dispute, event)

        if dispute.resolution is not None:
            self._informational(dispute, event, "network.resolution_received", {
                "network_resolution": event.resolution,
                "refund_amount": _amount_str(event.refund_amount),
                "internal_outcome": dispute.resolution.outcome.value,
            })
            if resolution is not None and resolution.agrees_with(dispute.resolution):
                return ReconcileResult(ReconcileOutcome.INFORMATIONAL, key, dispute.id, "rulings agree")
            conflict = self.conflicts.raise_conflict(ResolutionConflict(
                dispute_id=dispute.id,
                network_case_id=event.network_case_id or dispute.network_case_id,
                internal_resolution=dispute.resolution,
                network_resolution=event.resolution,
                network_refund_amount=event.refund_amount,
            ))
            return ReconcileResult(ReconcileOutcome.CONFLICT, key, dispute.id,
                                   "Network ruling disagrees with internal resolution", conflict.id)

        if resolution is None:
            return self._unmapped(dispute, event, key, problem)

        return self._transition(dispute, event, key, NetworkEffect.RESOLVE, "network.resolved", {
            "resolution": resolution,
            "network_resolution": event.resolution,
        })

    def map_resolution(self, dispute: Dispute, event: NetworkEvent) -> tuple[Optional[Resolution], str]:
        value = (event.resolution or "").strip().lower()
        outcome = NETWORK_RESOLUTION_MAP.get(value)
        if outcome is None:
            return None, f"unmapped Network resolution '{event.resolution}'"

        currency = dispute.transaction.currency
        refund: Optional[Decimal] = None
        if outcome == ResolutionOutcome.CUSTOMER_WINS_FULL_REFUND:
            refund = event.refund_amount if event.refund_amount is not None else dispute.transaction.amount
        elif outcome == ResolutionOutcome.CUSTOMER_WINS_PARTIAL_REFUND:
            if event.refund_amount is None:
                return None, "partial Network ruling without refund_amount"
            refund = event.refund_amount

        if refund is not None:
            if refund < 0 or refund > dispute.transaction.amount:
                return None, f"Network refund {refund} outside 0..{dispute.transaction.amount}"
            refund = round_to_minor_unit(refund, currency)

        return Resolution(
            outcome=outcome,
            reason=f"Network ruling: {value}",
            refund_amount=refund,
            factors=fraud.collect_risk_factors(dispute),
            decided_by=DecidedBy.NETWORK,
            decided_at=event.external_timestamp,
        ), ""

    def _is_stale(self, dispute: Dispute, event: NetworkEvent, effect: NetworkEffect) -> bool:
        if dispute.network_updated_at and event.external_timestamp < dispute.network_updated_at:
            return True
        # Escalated -> escalated moves nothing internal.
        if effect == NetworkEffect.ESCALATE and dispute.status == DisputeStatus.ESCALATED_TO_NETWORK:
            return False
        # An internal status change after the Network's report wins.
        return event.external_timestamp < dispute.status_changed_at

    def _transition(
        self,
        dispute: Dispute,
        event: NetworkEvent,
        key: str,
        effect: NetworkEffect,
        event_name: str,
        extra: dict,
    ) -> ReconcileResult:
        if network_target(dispute.status, effect) is None:
            self._informational(dispute, event, "network.out_of_sequence", {
                "status": dispute.status.value,
                "effect": effect.value,
            })
            return ReconcileResult(ReconcileOutcome.INFORMATIONAL, key, dispute.id,
                                   f"{effect.value} not applicable in {dispute.status.value}")
        payload = {
            "effect": effect.value,
            "event": event_name,
            "network_case_id": event.network_case_id,
            "network_status": event.status,
            "external_timestamp": event.external_timestamp,
            **extra,
        }
        self.state_machine.apply_transition(dispute.id, Trigger.NETWORK_EVENT, payload)
        return ReconcileResult(ReconcileOutcome.APPLIED, key, dispute.id, event_name)

    def _stale(self, dispute: Dispute, event: NetworkEvent, key: str) -> ReconcileResult:
        self._informational(dispute, event, "network.stale_event", {
            "network_updated_at": dispute.network_updated_at.isoformat() if dispute.network_updated_at else None,
            "status_changed_at": dispute.status_changed_at.isoformat(),
        })
        return ReconcileResult(ReconcileOutcome.INFORMATIONAL, key, dispute.id, "stale event")

    def _unmapped(self, dispute: Dispute, event: NetworkEvent, key: str, reason: str) -> ReconcileResult:
        logger.warning(f"Unmapped Network event {key} for dispute {dispute.id}: {reason}")
        self.conflicts.record_unmapped(event.model_dump(mode="json"), reason, dispute.id)
        self._informational(dispute, event, "network.unmapped_status", {"reason": reason})
        return ReconcileResult(ReconcileOutcome.UNMAPPED, key, dispute.id, reason)

    def _informational(self, dispute: Dispute, event: NetworkEvent, name: str, details: dict) -> None:
        self.state_machine.record_informational(dispute.id, name, {
            "kind": event.kind.value,
            "network_case_id": event.network_case_id,
            "network_status": event.status,
            "external_timestamp": event.external_timestamp.isoformat(),
            **details,
        }, timestamp=event.external_timestamp)


def _amount_str(amount: Optional[Decimal]) -> Optional[str]:
    return str(amount) if amount is not None else None
