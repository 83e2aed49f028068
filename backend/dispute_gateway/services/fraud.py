"""Fraud risk aggregation: weighted factor scores to a recommendation.

Pure functions only. ``score`` takes the factor list and a ``FraudConfig``
and never touches storage, so it can be exercised against literal inputs.
"""

from dataclasses import dataclass, field
from typing import Optional

from shared.config import FraudConfig
from shared.models import Dispute, Recommendation, RiskFactor

QR_VERIFIED_SCORE = 0.1
QR_UNVERIFIED_SCORE = 0.9


@dataclass(frozen=True)
class RiskScore:
    overall: float
    recommendation: Recommendation
    factors: list[RiskFactor] = field(default_factory=list)


def weighted_mean(factors: list[RiskFactor], config: FraudConfig) -> Optional[float]:
    total_weight = 0.0
    total = 0.0
    for f in factors:
        w = config.weight_for(f.factor)
        total_weight += w
        total += w * f.score
    if total_weight <= 0:
        return None
    return total / total_weight


def lone_dissenter(factors: list[RiskFactor], config: FraudConfig) -> Optional[RiskFactor]:
    """The single high-weight factor leaning opposite to all the others, if any."""
    if len(factors) < config.min_factors_for_compromise:
        return None
    risky = [f for f in factors if f.score >= config.lean_split]
    benign = [f for f in factors if f.score < config.lean_split]
    for minority in (risky, benign):
        if len(minority) == 1 and config.weight_for(minority[0].factor) >= config.high_weight:
            return minority[0]
    return None


def score(factors: list[RiskFactor], config: Optional[FraudConfig] = None) -> RiskScore:
    config = config or FraudConfig()
    factors = list(factors)

    overall = weighted_mean(factors, config)
    if overall is None:
        overall = config.neutral_score
    overall = min(max(overall, 0.0), 1.0)

    if lone_dissenter(factors, config) is not None:
        recommendation = Recommendation.COMPROMISE
    elif overall < config.approve_below:
        recommendation = Recommendation.APPROVE
    elif overall > config.reject_above:
        recommendation = Recommendation.REJECT
    else:
        recommendation = Recommendation.FURTHER_REVIEW

    return RiskScore(overall=round(overall, 6), recommendation=recommendation, factors=factors)


def merge_factors(existing: list[RiskFactor], incoming: list[RiskFactor]) -> list[RiskFactor]:
    # Later values for the same factor name replace earlier ones, first position kept.
    merged: dict[str, RiskFactor] = {f.factor: f for f in existing}
    for f in incoming:
        merged[f.factor] = f
    return list(merged.values())


def collect_risk_factors(dispute: Dispute) -> list[RiskFactor]:
    """Factors derived from what the dispute itself records, plus supplied ones."""
    derived: list[RiskFactor] = []

    evidence_count = len(dispute.evidence_refs)
    if evidence_count == 0:
        derived.append(RiskFactor(
            factor="evidence_volume", score=0.7,
            details="Customer supplied no evidence",
        ))
    else:
        derived.append(RiskFactor(
            factor="evidence_volume", score=max(0.1, 0.5 - 0.1 * evidence_count),
            details=f"{evidence_count} evidence item(s) on file",
        ))

    response = dispute.merchant_response
    if response is not None:
        if response.accepts_fault:
            derived.append(RiskFactor(
                factor="merchant_response", score=0.0,
                details="Merchant accepted fault",
            ))
        elif response.evidence:
            derived.append(RiskFactor(
                factor="merchant_response", score=0.8,
                details=f"Merchant contested with {len(response.evidence)} evidence item(s)",
            ))
        else:
            derived.append(RiskFactor(
                factor="merchant_response", score=0.6,
                details="Merchant contested without evidence",
            ))

    return merge_factors(derived, dispute.risk_factors)


def qr_verification_factor(verified: bool, metadata: Optional[dict] = None) -> RiskFactor:
    detail = "QR payload signature verified" if verified else "QR payload failed verification"
    if metadata and metadata.get("payload_id"):
        detail = f"{detail} ({metadata['payload_id']})"
    return RiskFactor(
        factor="qr_payload_verified",
        score=QR_VERIFIED_SCORE if verified else QR_UNVERIFIED_SCORE,
        details=detail,
    )
