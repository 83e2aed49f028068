"""API request models."""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from shared.models import (
    Actor, CustomerParty, MerchantParty, QrVerification, RequestedResolution,
    ResolutionOutcome, RiskFactor, TransactionRef,
)


class CreateDisputeRequest(BaseModel):
    transaction: TransactionRef
    customer: CustomerParty
    merchant: MerchantParty
    requested_resolution: RequestedResolution
    requested_amount: Optional[Decimal] = None
    reason: str
    description: str = ""
    evidence_refs: list[str] = []
    contact_merchant_first: bool = True
    chat_channel_id: Optional[str] = None


class MerchantResponseRequest(BaseModel):
    message: str
    accepts_fault: bool = False
    evidence: list[str] = []
    resolution_offer: Optional[str] = None


class AddEvidenceRequest(BaseModel):
    uri: str
    actor: Actor = Actor.CUSTOMER
    qr_verification: Optional[QrVerification] = None


class PostMessageRequest(BaseModel):
    actor: Actor
    text: str = Field(min_length=1)


class RiskFactorsRequest(BaseModel):
    factors: list[RiskFactor]


class EscalateRequest(BaseModel):
    # Supplied when the case was opened with the Network out of band.
    network_case_id: Optional[str] = None


class DecisionRequest(BaseModel):
    outcome: Optional[ResolutionOutcome] = None
    refund_amount: Optional[Decimal] = None
    reason: Optional[str] = None
    compromise_details: Optional[str] = None
    confirmed: bool = False


class AcknowledgeConflictRequest(BaseModel):
    note: Optional[str] = None


class ReplayRequest(BaseModel):
    transaction_id: Optional[str] = None
    network_case_id: Optional[str] = None
