"""Domain models, lifecycle enums, and the dispute transition table."""

from pydantic import BaseModel, Field, field_validator
from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# === Enums ===

class DisputeStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    MERCHANT_REVIEW = "MERCHANT_REVIEW"
    UNDER_REVIEW = "UNDER_REVIEW"
    ESCALATED_TO_NETWORK = "ESCALATED_TO_NETWORK"
    INTERNAL_REVIEW = "INTERNAL_REVIEW"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


TERMINAL_STATUSES = frozenset({DisputeStatus.RESOLVED, DisputeStatus.CLOSED})
REVIEW_STATUSES = frozenset({DisputeStatus.UNDER_REVIEW, DisputeStatus.INTERNAL_REVIEW})


class Trigger(str, Enum):
    MERCHANT_NOTIFIED = "MERCHANT_NOTIFIED"
    MERCHANT_RESPONDED = "MERCHANT_RESPONDED"
    MERCHANT_TIMEOUT_48H = "MERCHANT_TIMEOUT_48H"
    INTERNAL_DECISION = "INTERNAL_DECISION"
    ESCALATE = "ESCALATE"
    NETWORK_EVENT = "NETWORK_EVENT"
    ADMIN_CLOSE = "ADMIN_CLOSE"


class Actor(str, Enum):
    CUSTOMER = "CUSTOMER"
    MERCHANT = "MERCHANT"
    SYSTEM = "SYSTEM"
    NETWORK = "NETWORK"


class RequestedResolution(str, Enum):
    FULL_REFUND = "FULL_REFUND"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    REPLACEMENT = "REPLACEMENT"


class ResolutionOutcome(str, Enum):
    CUSTOMER_WINS_FULL_REFUND = "CUSTOMER_WINS_FULL_REFUND"
    CUSTOMER_WINS_PARTIAL_REFUND = "CUSTOMER_WINS_PARTIAL_REFUND"
    MERCHANT_WINS = "MERCHANT_WINS"
    COMPROMISE = "COMPROMISE"


class DecidedBy(str, Enum):
    INTERNAL = "INTERNAL"
    NETWORK = "NETWORK"


class Recommendation(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    FURTHER_REVIEW = "FURTHER_REVIEW"
    COMPROMISE = "COMPROMISE"


class NetworkEventKind(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    RESOLVED = "RESOLVED"
    EVIDENCE_REQUESTED = "EVIDENCE_REQUESTED"
    MESSAGE = "MESSAGE"
    REFUNDED = "REFUNDED"


class ConflictStatus(str, Enum):
    OPEN = "OPEN"
    ACKNOWLEDGED = "ACKNOWLEDGED"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# === State Machine Transitions ===
# Network-driven moves are listed separately; NETWORK_EVENT targets depend on
# the mapped event, see services.state_machine.

DISPUTE_TRANSITIONS: dict[DisputeStatus, dict[Trigger, DisputeStatus]] = {
    DisputeStatus.SUBMITTED: {
        Trigger.MERCHANT_NOTIFIED: DisputeStatus.MERCHANT_REVIEW,
        Trigger.MERCHANT_RESPONDED: DisputeStatus.UNDER_REVIEW,
        Trigger.MERCHANT_TIMEOUT_48H: DisputeStatus.UNDER_REVIEW,
        Trigger.ESCALATE: DisputeStatus.ESCALATED_TO_NETWORK,
    },
    DisputeStatus.MERCHANT_REVIEW: {
        Trigger.MERCHANT_RESPONDED: DisputeStatus.UNDER_REVIEW,
        Trigger.MERCHANT_TIMEOUT_48H: DisputeStatus.UNDER_REVIEW,
        Trigger.ESCALATE: DisputeStatus.ESCALATED_TO_NETWORK,
    },
    DisputeStatus.UNDER_REVIEW: {
        Trigger.MERCHANT_RESPONDED: DisputeStatus.UNDER_REVIEW,
        Trigger.INTERNAL_DECISION: DisputeStatus.RESOLVED,
        Trigger.ESCALATE: DisputeStatus.ESCALATED_TO_NETWORK,
    },
    DisputeStatus.ESCALATED_TO_NETWORK: {},
    DisputeStatus.INTERNAL_REVIEW: {
        Trigger.MERCHANT_RESPONDED: DisputeStatus.INTERNAL_REVIEW,
        Trigger.INTERNAL_DECISION: DisputeStatus.RESOLVED,
        Trigger.ESCALATE: DisputeStatus.ESCALATED_TO_NETWORK,
    },
    DisputeStatus.RESOLVED: {
        Trigger.ADMIN_CLOSE: DisputeStatus.CLOSED,
    },
    DisputeStatus.CLOSED: {},
}

NETWORK_ESCALATION_SOURCES = frozenset({
    DisputeStatus.SUBMITTED,
    DisputeStatus.MERCHANT_REVIEW,
    DisputeStatus.UNDER_REVIEW,
    DisputeStatus.ESCALATED_TO_NETWORK,
    DisputeStatus.INTERNAL_REVIEW,
})
NETWORK_EVIDENCE_SOURCES = frozenset({DisputeStatus.ESCALATED_TO_NETWORK})
NETWORK_RESOLUTION_SOURCES = frozenset({
    DisputeStatus.ESCALATED_TO_NETWORK,
    DisputeStatus.INTERNAL_REVIEW,
})


# === Parties ===

class CustomerParty(BaseModel):
    kind: Literal["customer"] = "customer"
    id: str
    email: Optional[str] = None


class MerchantParty(BaseModel):
    kind: Literal["merchant"] = "merchant"
    id: str
    email: Optional[str] = None


Party = Annotated[Union[CustomerParty, MerchantParty], Field(discriminator="kind")]


# === Domain Models ===

class TransactionRef(BaseModel):
    id: str
    amount: Decimal = Field(gt=0)
    currency: str = "USD"


class RiskFactor(BaseModel):
    factor: str
    score: float = Field(ge=0.0, le=1.0)
    details: Optional[str] = None


class QrVerification(BaseModel):
    verified: bool
    metadata: dict = Field(default_factory=dict)


class MerchantResponse(BaseModel):
    message: str
    accepts_fault: bool = False
    evidence: list[str] = Field(default_factory=list)
    resolution_offer: Optional[str] = None


class Resolution(BaseModel):
    outcome: ResolutionOutcome
    reason: str
    refund_amount: Optional[Decimal] = None
    compromise_details: Optional[str] = None
    factors: list[RiskFactor] = Field(default_factory=list)
    decided_by: DecidedBy = DecidedBy.INTERNAL
    decided_at: datetime = Field(default_factory=utcnow)

    def agrees_with(self, other: "Resolution") -> bool:
        return self.outcome == other.outcome and self.refund_amount == other.refund_amount


class Decision(BaseModel):
    outcome: Optional[ResolutionOutcome] = None
    reason: str
    refund_amount: Optional[Decimal] = None
    compromise_details: Optional[str] = None
    requires_confirmation: bool = False
    recommendation: Recommendation
    overall: float
    factors: list[RiskFactor] = Field(default_factory=list)


class Dispute(BaseModel):
    id: str = Field(default_factory=lambda: f"dsp_{uuid.uuid4().hex[:12]}")
    status: DisputeStatus = DisputeStatus.SUBMITTED
    requested_resolution: RequestedResolution
    requested_amount: Optional[Decimal] = None
    reason: str
    description: str = ""
    evidence_refs: list[str] = Field(default_factory=list)
    contact_merchant_first: bool = True

    transaction: TransactionRef
    customer: CustomerParty
    merchant: MerchantParty
    chat_channel_id: Optional[str] = None

    network_case_id: Optional[str] = None
    network_status: Optional[str] = None
    network_resolution: Optional[str] = None
    network_updated_at: Optional[datetime] = None

    merchant_response: Optional[MerchantResponse] = None
    merchant_responded_at: Optional[datetime] = None
    risk_factors: list[RiskFactor] = Field(default_factory=list)
    proposed_resolution: Optional[Decision] = None
    resolution: Optional[Resolution] = None

    correlation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    status_changed_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_evidence(self) -> bool:
        if self.evidence_refs:
            return True
        return bool(self.merchant_response and self.merchant_response.evidence)

    def parties(self) -> list[Union[CustomerParty, MerchantParty]]:
        return [self.customer, self.merchant]


class TimelineEvent(BaseModel):
    id: str = Field(default_factory=lambda: f"tle_{uuid.uuid4().hex[:12]}")
    dispute_id: str
    event: str
    timestamp: datetime = Field(default_factory=utcnow)
    actor: Actor
    details: dict = Field(default_factory=dict)
    sequence: int = 0
    correlation_id: Optional[str] = None


class NetworkEvent(BaseModel):
    network_case_id: Optional[str] = None
    network_payment_id: Optional[str] = None
    kind: NetworkEventKind
    status: Optional[str] = None
    resolution: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    external_timestamp: datetime
    payload: dict = Field(default_factory=dict)

    @field_validator("external_timestamp")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)

    def idempotency_key(self) -> str:
        ref = self.network_case_id or f"payment:{self.network_payment_id}"
        return f"{ref}|{self.kind.value}|{self.external_timestamp.isoformat()}"


class ResolutionConflict(BaseModel):
    id: str = Field(default_factory=lambda: f"cfl_{uuid.uuid4().hex[:12]}")
    dispute_id: str
    network_case_id: Optional[str] = None
    internal_resolution: Resolution
    network_resolution: Optional[str] = None
    network_refund_amount: Optional[Decimal] = None
    status: ConflictStatus = ConflictStatus.OPEN
    created_at: datetime = Field(default_factory=utcnow)
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    note: Optional[str] = None


class OutboxEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: f"oevt_{uuid.uuid4().hex[:12]}")
    type: str
    payload: dict
    correlation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
