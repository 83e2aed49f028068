"""Shared fixtures: an isolated data dir, a controllable clock, and wired services."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from shared.models import CustomerParty, MerchantParty, RequestedResolution, TransactionRef
from dispute_gateway.services.conflicts import ConflictRegistry
from dispute_gateway.services.idempotency import DeadLetterStore, ProcessedEventLog
from dispute_gateway.services.reconciliation import NetworkReconciliationEngine
from dispute_gateway.services.state_machine import DisputeStateMachine
from dispute_gateway.services.storage import FileDisputeStore

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, dispute_id: str, event_kind: str) -> None:
        self.sent.append((dispute_id, event_kind))


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store(data_dir):
    return FileDisputeStore(data_dir)


@pytest.fixture
def state_machine(store, notifier, data_dir, clock):
    return DisputeStateMachine(store, notifier, data_dir, clock=clock)


@pytest.fixture
def dead_letters(data_dir):
    return DeadLetterStore(data_dir)


@pytest.fixture
def conflicts(data_dir):
    return ConflictRegistry(data_dir)


@pytest.fixture
def reconciler(state_machine, store, data_dir, dead_letters, conflicts):
    return NetworkReconciliationEngine(
        state_machine, store, ProcessedEventLog(data_dir), dead_letters, conflicts,
    )


@pytest.fixture
def file_dispute(state_machine):
    """Factory opening a dispute over a 100.00 USD QR payment by default."""

    def _file(
        transaction_id: str = "txn_qr_1001",
        amount: str = "100.00",
        currency: str = "USD",
        requested_resolution: RequestedResolution = RequestedResolution.FULL_REFUND,
        requested_amount=None,
        evidence_refs=None,
        contact_merchant_first: bool = True,
    ):
        return state_machine.open_dispute(
            transaction=TransactionRef(id=transaction_id, amount=Decimal(amount), currency=currency),
            customer=CustomerParty(id="cus_ana", email="ana@example.com"),
            merchant=MerchantParty(id="mer_cafe", email="owner@cafe.example"),
            requested_resolution=requested_resolution,
            reason="Item not received",
            requested_amount=Decimal(requested_amount) if requested_amount is not None else None,
            evidence_refs=evidence_refs,
            contact_merchant_first=contact_merchant_first,
        )

    return _file
