"""Resolution decision procedure for disputes decided without a Network ruling."""

from decimal import Decimal, ROUND_HALF_UP

from shared.models import (
    Decision, Dispute, Recommendation, RequestedResolution, ResolutionOutcome,
)
from dispute_gateway.services.fraud import RiskScore

# ISO 4217 exponents that differ from the usual two decimal places.
CURRENCY_MINOR_UNITS = {
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0, "KMF": 0,
    "KRW": 0, "PYG": 0, "RWF": 0, "UGX": 0, "VND": 0, "VUV": 0, "XAF": 0,
    "XOF": 0, "XPF": 0,
    "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
}

INSUFFICIENT_EVIDENCE_REASON = "insufficient/contradictory evidence"


def minor_unit_exponent(currency: str) -> int:
    return CURRENCY_MINOR_UNITS.get(currency.upper(), 2)


def round_to_minor_unit(amount: Decimal, currency: str) -> Decimal:
    quantum = Decimal(1).scaleb(-minor_unit_exponent(currency))
    return amount.quantize(quantum, rounding=ROUND_HALF_UP)


def requested_refund_amount(dispute: Dispute) -> Decimal:
    if dispute.requested_resolution == RequestedResolution.PARTIAL_REFUND and dispute.requested_amount:
        return dispute.requested_amount
    return dispute.transaction.amount


def _customer_wins_as_requested(dispute: Dispute, risk: RiskScore) -> Decision:
    currency = dispute.transaction.currency
    common = dict(recommendation=risk.recommendation, overall=risk.overall, factors=risk.factors)
    if dispute.requested_resolution == RequestedResolution.PARTIAL_REFUND:
        return Decision(
            outcome=ResolutionOutcome.CUSTOMER_WINS_PARTIAL_REFUND,
            reason="Merchant accepted fault",
            refund_amount=round_to_minor_unit(requested_refund_amount(dispute), currency),
            **common,
        )
    if dispute.requested_resolution == RequestedResolution.REPLACEMENT:
        return Decision(
            outcome=ResolutionOutcome.COMPROMISE,
            reason="Merchant accepted fault",
            compromise_details="Merchant to provide a replacement as requested",
            **common,
        )
    return Decision(
        outcome=ResolutionOutcome.CUSTOMER_WINS_FULL_REFUND,
        reason="Merchant accepted fault",
        refund_amount=round_to_minor_unit(dispute.transaction.amount, currency),
        **common,
    )


def decide(dispute: Dispute, risk: RiskScore) -> Decision:
    """Apply the decision table in priority order.

    1. Merchant accepts fault: customer wins at the requested resolution.
    2. REJECT: merchant wins.
    3. APPROVE with evidence: customer wins a full refund.
    4. COMPROMISE or FURTHER_REVIEW with evidence: half the requested amount,
       pending human confirmation.
    Anything else has no automatic outcome and waits for a reviewer.
    """
    common = dict(recommendation=risk.recommendation, overall=risk.overall, factors=risk.factors)
    currency = dispute.transaction.currency

    response = dispute.merchant_response
    if response is not None and response.accepts_fault:
        return _customer_wins_as_requested(dispute, risk)

    if risk.recommendation == Recommendation.REJECT:
        return Decision(
            outcome=ResolutionOutcome.MERCHANT_WINS,
            reason=INSUFFICIENT_EVIDENCE_REASON,
            **common,
        )

    if risk.recommendation == Recommendation.APPROVE and dispute.has_evidence:
        return Decision(
            outcome=ResolutionOutcome.CUSTOMER_WINS_FULL_REFUND,
            reason="Low fraud risk with supporting evidence",
            refund_amount=round_to_minor_unit(dispute.transaction.amount, currency),
            **common,
        )

    if risk.recommendation in (Recommendation.COMPROMISE, Recommendation.FURTHER_REVIEW) and dispute.has_evidence:
        partial = round_to_minor_unit(requested_refund_amount(dispute) / 2, currency)
        return Decision(
            outcome=ResolutionOutcome.COMPROMISE,
            reason="Mixed evidence; splitting the requested amount",
            refund_amount=partial,
            compromise_details=f"Refund {partial} {currency} of the requested "
                               f"{requested_refund_amount(dispute)} {currency}",
            requires_confirmation=True,
            **common,
        )

    return Decision(
        outcome=None,
        reason="manual review required",
        requires_confirmation=True,
        **common,
    )
