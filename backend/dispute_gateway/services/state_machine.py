"""Dispute lifecycle state machine.

Every status change goes through ``DisputeStateMachine.apply_transition``.
One call loads the dispute under its per-id file lock, checks the
transition table, mutates, saves with an optimistic version check, and
appends exactly one timeline event. Notification happens after the save
and is best-effort.
"""

import os
import re
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterator, Optional

from filelock import FileLock

from shared.config import FraudConfig, MERCHANT_RESPONSE_WINDOW_HOURS
from shared.file_store import LOCK_TIMEOUT
from shared.models import (
    Actor, DecidedBy, Decision, Dispute, DisputeStatus, DISPUTE_TRANSITIONS,
    MerchantParty, CustomerParty, MerchantResponse, NETWORK_ESCALATION_SOURCES,
    NETWORK_EVIDENCE_SOURCES, NETWORK_RESOLUTION_SOURCES, QrVerification,
    RequestedResolution, Resolution, ResolutionOutcome, REVIEW_STATUSES, RiskFactor,
    TERMINAL_STATUSES, TimelineEvent, TransactionRef, Trigger, utcnow,
)
from dispute_gateway.services import fraud
from dispute_gateway.services.errors import (
    DisputeValidationError, DuplicateDisputeError, InvalidForStateError,
    InvalidTransitionPayloadError,
)
from dispute_gateway.services.notifier import Notifier
from dispute_gateway.services.resolution import decide
from dispute_gateway.services.storage import DisputeStore
from dispute_gateway.services.timeline import TimelineLedger

logger = logging.getLogger("disputerail.state_machine")


class NetworkEffect(str, Enum):
    """What a translated Network event asks of the lifecycle."""
    ESCALATE = "ESCALATE"
    REQUEST_EVIDENCE = "REQUEST_EVIDENCE"
    RESOLVE = "RESOLVE"
    MESSAGE = "MESSAGE"


def network_target(status: DisputeStatus, effect: NetworkEffect) -> Optional[DisputeStatus]:
    if status in TERMINAL_STATUSES:
        return None
    if effect == NetworkEffect.MESSAGE:
        return status
    if effect == NetworkEffect.ESCALATE and status in NETWORK_ESCALATION_SOURCES:
        return DisputeStatus.ESCALATED_TO_NETWORK
    if effect == NetworkEffect.REQUEST_EVIDENCE and status in NETWORK_EVIDENCE_SOURCES:
        return DisputeStatus.INTERNAL_REVIEW
    if effect == NetworkEffect.RESOLVE and status in NETWORK_RESOLUTION_SOURCES:
        return DisputeStatus.RESOLVED
    return None


class DisputeStateMachine:

    def __init__(
        self,
        store: DisputeStore,
        notifier: Notifier,
        data_dir: str,
        fraud_config: Optional[FraudConfig] = None,
        response_window: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.timeline = TimelineLedger(store)
        self.fraud_config = fraud_config or FraudConfig()
        self.response_window = response_window or timedelta(hours=MERCHANT_RESPONSE_WINDOW_HOURS)
        self.clock = clock
        self.locks_dir = os.path.join(data_dir, "locks")
        self._locks: dict[str, list] = {}
        self._locks_guard = threading.Lock()

    # --- locking -----------------------------------------------------------

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """Serialize work on one key: a dispute id, or `txn_<id>` for submissions.

        Re-entrant within a thread. An entry lives only while someone holds
        or waits on it.
        """
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                os.makedirs(self.locks_dir, exist_ok=True)
                path = os.path.join(self.locks_dir, f"{_lock_name(key)}.lock")
                entry = self._locks[key] = [FileLock(path, timeout=LOCK_TIMEOUT), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    # --- queries -----------------------------------------------------------

    def get(self, dispute_id: str) -> Dispute:
        return self.store.load(dispute_id)

    def history(self, dispute_id: str) -> list[TimelineEvent]:
        self.store.load(dispute_id)
        return self.timeline.history(dispute_id)

    def evaluate(self, dispute: Dispute) -> Decision:
        risk = fraud.score(fraud.collect_risk_factors(dispute), self.fraud_config)
        return decide(dispute, risk)

    def is_timeout_due(self, dispute: Dispute, now: datetime) -> bool:
        return (
            dispute.status in (DisputeStatus.SUBMITTED, DisputeStatus.MERCHANT_REVIEW)
            and dispute.merchant_response is None
            and dispute.created_at + self.response_window <= now
        )

    def due_transitions(self, now: Optional[datetime] = None) -> list[str]:
        """Disputes whose merchant response window has lapsed."""
        now = now or self.clock()
        due = []
        for dispute_id in self.store.list_ids():
            dispute = self.store.load(dispute_id)
            if self.is_timeout_due(dispute, now):
                due.append(dispute_id)
        return due

    # --- creation ----------------------------------------------------------

    def open_dispute(
        self,
        transaction: TransactionRef,
        customer: CustomerParty,
        merchant: MerchantParty,
        requested_resolution: RequestedResolution,
        reason: str,
        description: str = "",
        requested_amount: Optional[Decimal] = None,
        evidence_refs: Optional[list[str]] = None,
        contact_merchant_first: bool = True,
        chat_channel_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Dispute:
        if requested_resolution == RequestedResolution.PARTIAL_REFUND and requested_amount is None:
            raise DisputeValidationError("A partial refund request needs a requested amount")
        if requested_amount is not None:
            if requested_amount <= 0:
                raise DisputeValidationError("Requested amount must be positive")
            if requested_amount > transaction.amount:
                raise DisputeValidationError("Requested amount exceeds the transaction amount")

        with self.locked(f"txn_{transaction.id}"):
            existing = self.store.find_by_transaction_id(transaction.id)
            if existing is not None and not existing.is_terminal:
                raise DuplicateDisputeError(transaction.id, existing.id)

            now = self.clock()
            dispute = Dispute(
                requested_resolution=requested_resolution,
                requested_amount=requested_amount,
                reason=reason,
                description=description,
                evidence_refs=list(evidence_refs or []),
                contact_merchant_first=contact_merchant_first,
                transaction=transaction,
                customer=customer,
                merchant=merchant,
                chat_channel_id=chat_channel_id,
                correlation_id=correlation_id,
                created_at=now,
                updated_at=now,
                status_changed_at=now,
            )
            with self.locked(dispute.id):
                self.store.create(dispute)
                self.timeline.record(dispute.id, "dispute.submitted", Actor.CUSTOMER, {
                    "transaction_id": transaction.id,
                    "requested_resolution": requested_resolution.value,
                    "requested_amount": str(requested_amount) if requested_amount is not None else None,
                    "reason": reason,
                }, timestamp=now)
        logger.info(f"Dispute {dispute.id} submitted for transaction {transaction.id}")
        self._notify(dispute.id, "dispute.submitted")

        if contact_merchant_first:
            dispute = self.apply_transition(dispute.id, Trigger.MERCHANT_NOTIFIED)
        return dispute

    # --- transitions -------------------------------------------------------

    def apply_transition(self, dispute_id: str, trigger: Trigger, payload: Optional[dict] = None) -> Dispute:
        trigger = Trigger(trigger)
        payload = payload or {}
        with self.locked(dispute_id):
            dispute = self.store.load(dispute_id)
            expected = dispute.version
            previous = dispute.status
            now = self.clock()

            target = self._target_for(dispute, trigger, payload, now)
            event_name, actor, details, timestamp = self._mutate(dispute, trigger, payload, now)

            dispute.status = target
            dispute.updated_at = now
            if target != previous:
                dispute.status_changed_at = now
            if target in REVIEW_STATUSES:
                dispute.proposed_resolution = self.evaluate(dispute)

            self.store.save(dispute, expected)
            details = {"from": previous.value, "to": target.value, "trigger": trigger.value, **details}
            self.timeline.record(dispute_id, event_name, actor, details, timestamp=timestamp or now)

        logger.info(f"Dispute {dispute_id}: {previous.value} -> {target.value} via {trigger.value}")
        self._notify(dispute_id, event_name)
        return dispute

    def _target_for(self, dispute: Dispute, trigger: Trigger, payload: dict, now: datetime) -> DisputeStatus:
        if trigger == Trigger.NETWORK_EVENT:
            effect = self._network_effect(payload)
            target = network_target(dispute.status, effect)
        else:
            target = DISPUTE_TRANSITIONS.get(dispute.status, {}).get(trigger)
            if trigger == Trigger.MERCHANT_TIMEOUT_48H and not self.is_timeout_due(dispute, now):
                target = None
        if target is None:
            raise InvalidForStateError(dispute.id, dispute.status.value, trigger.value)
        return target

    @staticmethod
    def _network_effect(payload: dict) -> NetworkEffect:
        try:
            return NetworkEffect(payload["effect"])
        except (KeyError, ValueError):
            raise InvalidTransitionPayloadError(Trigger.NETWORK_EVENT.value, "missing or unknown effect")

    def _mutate(self, dispute: Dispute, trigger: Trigger, payload: dict, now: datetime):
        """Apply trigger-specific changes; returns (event, actor, details, timestamp)."""
        if trigger == Trigger.MERCHANT_NOTIFIED:
            return "merchant.notified", Actor.SYSTEM, {"merchant_id": dispute.merchant.id}, None

        if trigger == Trigger.MERCHANT_RESPONDED:
            try:
                response = MerchantResponse.model_validate(payload)
            except ValueError as e:
                raise InvalidTransitionPayloadError(trigger.value, str(e))
            replaced = dispute.merchant_response is not None
            dispute.merchant_response = response
            dispute.merchant_responded_at = now
            return "merchant.responded", Actor.MERCHANT, {
                "accepts_fault": response.accepts_fault,
                "evidence": list(response.evidence),
                "resolution_offer": response.resolution_offer,
                "replaced_previous": replaced,
            }, None

        if trigger == Trigger.MERCHANT_TIMEOUT_48H:
            return "no-response", Actor.SYSTEM, {
                "window_hours": self.response_window.total_seconds() / 3600,
                "note": "Merchant did not respond within the response window",
            }, None

        if trigger == Trigger.ESCALATE:
            case_id = payload.get("network_case_id")
            if not case_id:
                raise InvalidTransitionPayloadError(trigger.value, "network_case_id is required")
            if dispute.network_case_id and dispute.network_case_id != case_id:
                raise InvalidTransitionPayloadError(
                    trigger.value, f"dispute already linked to case {dispute.network_case_id}"
                )
            dispute.network_case_id = case_id
            return "escalated.network", Actor.SYSTEM, {
                "network_case_id": case_id,
                "reviewer": payload.get("reviewer"),
            }, None

        if trigger == Trigger.INTERNAL_DECISION:
            dispute.resolution = self._internal_resolution(dispute, payload, now)
            return "resolution.decided", Actor.SYSTEM, {
                "outcome": dispute.resolution.outcome.value,
                "refund_amount": _amount_str(dispute.resolution.refund_amount),
                "reviewer": payload.get("reviewer"),
            }, None

        if trigger == Trigger.ADMIN_CLOSE:
            return "dispute.closed", Actor.SYSTEM, {"reviewer": payload.get("reviewer")}, None

        return self._mutate_from_network(dispute, payload)

    def _internal_resolution(self, dispute: Dispute, payload: dict, now: datetime) -> Resolution:
        if payload.get("outcome"):
            try:
                outcome = ResolutionOutcome(payload["outcome"])
            except ValueError:
                raise InvalidTransitionPayloadError(Trigger.INTERNAL_DECISION.value, f"unknown outcome {payload['outcome']}")
            refund = payload.get("refund_amount")
            resolution = Resolution(
                outcome=outcome,
                reason=payload.get("reason") or "Reviewer decision",
                refund_amount=Decimal(str(refund)) if refund is not None else None,
                compromise_details=payload.get("compromise_details"),
                factors=fraud.collect_risk_factors(dispute),
                decided_by=DecidedBy.INTERNAL,
                decided_at=now,
            )
        else:
            proposal = dispute.proposed_resolution or self.evaluate(dispute)
            if proposal.outcome is None:
                raise InvalidTransitionPayloadError(
                    Trigger.INTERNAL_DECISION.value, "no automatic outcome; an explicit outcome is required"
                )
            if proposal.requires_confirmation and not payload.get("confirmed"):
                raise InvalidTransitionPayloadError(
                    Trigger.INTERNAL_DECISION.value, "proposed outcome requires reviewer confirmation"
                )
            resolution = Resolution(
                outcome=proposal.outcome,
                reason=proposal.reason,
                refund_amount=proposal.refund_amount,
                compromise_details=proposal.compromise_details,
                factors=proposal.factors,
                decided_by=DecidedBy.INTERNAL,
                decided_at=now,
            )
        self._check_refund(dispute, resolution.refund_amount, Trigger.INTERNAL_DECISION)
        return resolution

    def _mutate_from_network(self, dispute: Dispute, payload: dict):
        effect = self._network_effect(payload)
        timestamp = payload.get("external_timestamp")
        details = {
            "network_case_id": payload.get("network_case_id") or dispute.network_case_id,
            "network_status": payload.get("network_status"),
            "external_timestamp": timestamp.isoformat() if timestamp else None,
        }

        if effect == NetworkEffect.MESSAGE:
            details["message"] = payload.get("message")
            return payload.get("event", "network.message"), Actor.NETWORK, details, timestamp

        if effect == NetworkEffect.ESCALATE and not (payload.get("network_case_id") or dispute.network_case_id):
            raise InvalidTransitionPayloadError(Trigger.NETWORK_EVENT.value, "network_case_id is required")
        if payload.get("network_case_id") and not dispute.network_case_id:
            dispute.network_case_id = payload["network_case_id"]
        if payload.get("network_status"):
            dispute.network_status = payload["network_status"]
        if timestamp is not None:
            dispute.network_updated_at = timestamp

        if effect == NetworkEffect.RESOLVE:
            resolution = payload.get("resolution")
            if not isinstance(resolution, Resolution):
                raise InvalidTransitionPayloadError(Trigger.NETWORK_EVENT.value, "resolution is required")
            self._check_refund(dispute, resolution.refund_amount, Trigger.NETWORK_EVENT)
            dispute.resolution = resolution
            dispute.network_resolution = payload.get("network_resolution")
            details["outcome"] = resolution.outcome.value
            details["refund_amount"] = _amount_str(resolution.refund_amount)
            details["network_resolution"] = dispute.network_resolution
            return payload.get("event", "network.resolved"), Actor.NETWORK, details, timestamp

        if effect == NetworkEffect.REQUEST_EVIDENCE:
            return payload.get("event", "network.evidence_requested"), Actor.NETWORK, details, timestamp

        return payload.get("event", "network.status_changed"), Actor.NETWORK, details, timestamp

    @staticmethod
    def _check_refund(dispute: Dispute, refund: Optional[Decimal], trigger: Trigger) -> None:
        if refund is None:
            return
        if refund < 0 or refund > dispute.transaction.amount:
            raise InvalidTransitionPayloadError(
                trigger.value, f"refund {refund} outside 0..{dispute.transaction.amount}"
            )

    # --- non-transition updates -------------------------------------------

    def add_evidence(
        self,
        dispute_id: str,
        uri: str,
        actor: Actor,
        qr_verification: Optional[QrVerification] = None,
    ) -> Dispute:
        with self.locked(dispute_id):
            dispute = self.store.load(dispute_id)
            if dispute.is_terminal:
                raise InvalidForStateError(dispute_id, dispute.status.value, "ADD_EVIDENCE")
            expected = dispute.version
            dispute.evidence_refs.append(uri)
            details = {"uri": uri, "position": len(dispute.evidence_refs) - 1}
            if qr_verification is not None:
                factor = fraud.qr_verification_factor(qr_verification.verified, qr_verification.metadata)
                dispute.risk_factors = fraud.merge_factors(dispute.risk_factors, [factor])
                details["qr_verified"] = qr_verification.verified
            self._refresh(dispute)
            self.store.save(dispute, expected)
            self.timeline.record(dispute_id, "evidence.added", actor, details, timestamp=dispute.updated_at)
        self._notify(dispute_id, "evidence.added")
        return dispute

    def add_risk_factors(self, dispute_id: str, factors: list[RiskFactor]) -> Dispute:
        with self.locked(dispute_id):
            dispute = self.store.load(dispute_id)
            if dispute.is_terminal:
                raise InvalidForStateError(dispute_id, dispute.status.value, "ADD_RISK_FACTORS")
            expected = dispute.version
            dispute.risk_factors = fraud.merge_factors(dispute.risk_factors, factors)
            self._refresh(dispute)
            self.store.save(dispute, expected)
            self.timeline.record(dispute_id, "risk.factors_updated", Actor.SYSTEM, {
                "factors": [f.model_dump(mode="json") for f in factors],
            }, timestamp=dispute.updated_at)
        return dispute

    def post_message(self, dispute_id: str, actor: Actor, text: str) -> TimelineEvent:
        with self.locked(dispute_id):
            dispute = self.store.load(dispute_id)
            if dispute.is_terminal:
                raise InvalidForStateError(dispute_id, dispute.status.value, "POST_MESSAGE")
            event = self.timeline.record(dispute_id, "message.posted", actor, {
                "text": text,
                "chat_channel_id": dispute.chat_channel_id,
            }, timestamp=self.clock())
        self._notify(dispute_id, "message.posted")
        return event

    def record_informational(
        self,
        dispute_id: str,
        event: str,
        details: dict,
        timestamp: Optional[datetime] = None,
    ) -> TimelineEvent:
        """Timeline-only record of a Network fact that must not change the dispute."""
        with self.locked(dispute_id):
            self.store.load(dispute_id)
            return self.timeline.record(dispute_id, event, Actor.NETWORK, details, timestamp=timestamp)

    def _refresh(self, dispute: Dispute) -> None:
        dispute.updated_at = self.clock()
        if dispute.status in REVIEW_STATUSES:
            dispute.proposed_resolution = self.evaluate(dispute)

    def _notify(self, dispute_id: str, event_kind: str) -> None:
        try:
            self.notifier.notify(dispute_id, event_kind)
        except Exception:
            logger.exception(f"Notification {event_kind} for dispute {dispute_id} failed")


def _amount_str(amount: Optional[Decimal]) -> Optional[str]:
    return str(amount) if amount is not None else None


def _lock_name(key: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", key)
