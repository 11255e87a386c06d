#!/usr/bin/env python3
"""Cross-chain causality explanations.

Pure functions turning a classification and the ticket parameters into a
human readable explanation with numeric recommendations. Nothing here
performs I/O.
"""

from typing import Any

from .models import (
    CausalChain,
    Explanation,
    FailureClassification,
    FailureLocation,
    FailureReason,
    ReceiptSummary,
    Recommendation,
    Ticket,
)

PARAMETER_MISMATCH_UTILIZATION = 0.95
MISMATCH_GAS_FACTOR = (13, 10)
SUBMISSION_COST_FACTOR = 2


def _ceil_pct(numerator: int, denominator: int) -> int:
    return -(-numerator * 100 // denominator)


def _execution_receipt(l1_receipt: ReceiptSummary | None, l2_receipt: ReceiptSummary | None) -> ReceiptSummary | None:
    return l2_receipt if l2_receipt is not None else l1_receipt


def explain(
    classification: FailureClassification,
    ticket: Ticket | None,
    l1_receipt: ReceiptSummary | None = None,
    l2_receipt: ReceiptSummary | None = None
) -> Explanation:
    """
    Explain a classification in terms of the L1 parameters and L2 impact.

    Args:
        classification: Output of the failure classifier
        ticket: Ticket parameters submitted on L1, if known
        l1_receipt: L1 submission receipt, if known
        l2_receipt: L2 execution receipt, if known

    Returns:
        Explanation with causal chain, message and recommendations
    """
    reason = classification.reason
    receipt = _execution_receipt(l1_receipt, l2_receipt)

    if classification.location is FailureLocation.L1_SUBMISSION:
        message = "The L1 submission reverted, so no retryable ticket was created."
        if classification.message:
            message += f" Revert reason: {classification.message}."
        return Explanation(
            chain=CausalChain.L1_CAUSED,
            causality_type="LOGIC_ERROR",
            human_message=message,
            recommendations=(Recommendation(
                priority="HIGH",
                action="Fix the L1 call before resubmitting",
                current=None,
                suggested=None,
                reasoning="The ticket parameters were never submitted",
            ),),
        )

    match reason:
        case FailureReason.OUT_OF_GAS:
            return _explain_out_of_gas(classification, ticket, receipt)
        case FailureReason.LOW_GAS_LIMIT:
            suggested = max(ticket.gas_ceiling * 2, 100_000) if ticket else None
            return Explanation(
                chain=CausalChain.L1_CAUSED,
                causality_type="INSUFFICIENT_GAS",
                human_message=(
                    f"The retryable gas limit ({ticket.gas_ceiling if ticket else 'unknown'}) is too low "
                    "for the L2 call to be auto-redeemed."
                ),
                recommendations=(Recommendation(
                    priority="HIGH",
                    action="Increase maxGas on L1",
                    current=str(ticket.gas_ceiling) if ticket else None,
                    suggested=str(suggested) if suggested else None,
                    reasoning="Gas limits under 100000 rarely cover an L2 call",
                ),),
            )
        case FailureReason.LOW_SUBMISSION_COST:
            current = ticket.submission_value if ticket else None
            return Explanation(
                chain=CausalChain.L1_CAUSED,
                causality_type="LOW_SUBMISSION_COST",
                human_message=(
                    "The submission value paid on L1 appears insufficient; "
                    "the ticket may not have been funded for auto-redeem."
                ),
                recommendations=(Recommendation(
                    priority="HIGH",
                    action="Increase maxSubmissionCost",
                    current=str(current) if current is not None else None,
                    suggested=str(current * SUBMISSION_COST_FACTOR) if current else None,
                    reasoning="Submission cost must cover storing the ticket data on L2",
                ),),
            )
        case FailureReason.LOW_GAS_PRICE:
            return Explanation(
                chain=CausalChain.L1_CAUSED,
                causality_type="LOW_GAS_PRICE",
                human_message=(
                    "The maxFeePerGas set on L1 was below the recent L2 base fee margin, "
                    "so the auto-redeem could not be scheduled."
                ),
                recommendations=(Recommendation(
                    priority="MEDIUM",
                    action="Increase maxFeePerGas",
                    current=str(ticket.max_fee_per_gas) if ticket else None,
                    suggested=str(ticket.max_fee_per_gas * 2) if ticket else None,
                    reasoning="L2 base fee must be covered at redeem time",
                ),),
            )
        case FailureReason.TIMEOUT:
            return Explanation(
                chain=CausalChain.UNKNOWN,
                causality_type="EXPIRED",
                human_message=(
                    "The ticket was never redeemed and its 7-day lifetime has passed; "
                    "the L2 call can no longer be executed."
                ),
                recommendations=(Recommendation(
                    priority="HIGH",
                    action="Resubmit the message from L1",
                    current=None,
                    suggested=None,
                    reasoning="Expired tickets are discarded",
                ),),
            )
        case FailureReason.LOGIC_REVERT:
            message = "L2 execution reverted due to contract logic"
            if classification.message:
                message += f": {classification.message}"
            return Explanation(
                chain=CausalChain.L2_CAUSED,
                causality_type="LOGIC_ERROR",
                human_message=message + ". The L1 parameters are not the cause.",
                recommendations=(Recommendation(
                    priority="HIGH",
                    action="Debug the L2 contract call",
                    current=None,
                    suggested=None,
                    reasoning="The revert originates in the destination contract",
                ),),
            )

    return _explain_unknown(ticket, receipt, l2_receipt)


def _explain_out_of_gas(
    classification: FailureClassification,
    ticket: Ticket | None,
    receipt: ReceiptSummary | None
) -> Explanation:
    remediation = classification.remediation
    if remediation is None or receipt is None:
        return Explanation(
            chain=CausalChain.L1_CAUSED,
            causality_type="INSUFFICIENT_GAS",
            human_message="L2 execution ran out of gas; increase maxGas on L1.",
        )

    percent = remediation.percent_increase
    message = (
        f"Your retryable ticket likely failed because L1 maxGas was set to "
        f"{remediation.current_gas_ceiling}, but L2 execution consumed {receipt.gas_used} gas; "
        f"increase maxGas by ~{percent}% (suggested: {remediation.suggested_gas_ceiling})."
    )
    return Explanation(
        chain=CausalChain.L1_CAUSED,
        causality_type="INSUFFICIENT_GAS",
        human_message=message,
        recommendations=(Recommendation(
            priority="HIGH",
            action="Increase maxGas (gas limit) on L1",
            current=str(remediation.current_gas_ceiling),
            suggested=str(remediation.suggested_gas_ceiling),
            reasoning=f"L2 execution consumed {receipt.gas_used} gas",
        ),),
    )


def _explain_unknown(
    ticket: Ticket | None,
    receipt: ReceiptSummary | None,
    l2_receipt: ReceiptSummary | None
) -> Explanation:
    # Only a reverted L2 execution can point back at the L1 gas parameters
    utilization = l2_receipt.gas_utilization if l2_receipt is not None and l2_receipt.reverted else None
    if utilization is not None and utilization > PARAMETER_MISMATCH_UTILIZATION:
        ceiling = l2_receipt.gas_limit
        numerator, denominator = MISMATCH_GAS_FACTOR
        return Explanation(
            chain=CausalChain.L1_CAUSED,
            causality_type="PARAMETER_MISMATCH",
            human_message=(
                f"L2 execution used {utilization:.1%} of its gas limit; "
                "the L1 gas parameters leave almost no headroom."
            ),
            recommendations=(Recommendation(
                priority="MEDIUM",
                action="Add headroom to maxGas",
                current=str(ceiling),
                suggested=str(ceiling * numerator // denominator),
                reasoning="Executions this close to the limit fail on small state changes",
            ),),
        )

    if ticket is None and receipt is None:
        message = "No receipt or retryable ticket was found for this transaction."
    elif ticket is None:
        message = "No retryable ticket was found for this transaction; no cross-chain failure could be attributed."
    else:
        message = "No failure could be attributed to the ticket parameters or the L2 execution."
    return Explanation(chain=CausalChain.UNKNOWN, causality_type="UNKNOWN", human_message=message)


def build_causal_graph(
    classification: FailureClassification,
    ticket: Ticket | None,
    l1_receipt: ReceiptSummary | None = None,
    l2_receipt: ReceiptSummary | None = None
) -> dict[str, Any]:
    """
    Describe the L1 submission, ticket creation and L2 execution as a chain.

    Returns:
        Dictionary with one node per stage and the ordered causal steps
    """
    l1_node = {
        "tx_hash": l1_receipt.tx_hash,
        "status": "SUCCESS" if l1_receipt.succeeded else "FAILED",
        "gas_used": str(l1_receipt.gas_used),
    } if l1_receipt else None

    ticket_node = {
        "ticket_id": ticket.ticket_id_hex,
        "gas_limit": str(ticket.gas_ceiling),
        "max_fee_per_gas": str(ticket.max_fee_per_gas),
        "submission_value": str(ticket.submission_value),
    } if ticket else None

    l2_node = {
        "tx_hash": l2_receipt.tx_hash,
        "status": "SUCCESS" if l2_receipt.succeeded else "FAILED",
        "gas_used": str(l2_receipt.gas_used),
        "gas_limit": str(l2_receipt.gas_limit) if l2_receipt.gas_limit is not None else None,
    } if l2_receipt else None

    steps = []
    if l1_node:
        steps.append({"step": 1, "layer": "L1", "action": "Submit retryable", "status": l1_node["status"]})
    if ticket_node:
        steps.append({"step": len(steps) + 1, "layer": "L1->L2", "action": "Create ticket", "status": "SUCCESS"})
    if l2_node:
        steps.append({"step": len(steps) + 1, "layer": "L2", "action": "Execute call", "status": l2_node["status"]})
    if classification.reason is not FailureReason.UNKNOWN:
        steps.append({
            "step": len(steps) + 1,
            "layer": "L1" if classification.location is FailureLocation.L1_SUBMISSION else "L2",
            "action": f"Failure: {classification.reason.value}",
            "status": "FAILED",
        })

    if ticket and l2_receipt and l2_receipt.reverted and l2_receipt.gas_used >= ticket.gas_ceiling:
        relation = "L1 gas limit bounded L2 execution"
    elif classification.reason is FailureReason.LOGIC_REVERT:
        relation = "L2 contract logic reverted independently of L1 parameters"
    else:
        relation = None

    return {
        "l1_submission": l1_node,
        "retryable_creation": ticket_node,
        "l2_execution": l2_node,
        "causal_chain": steps,
        "relation": relation,
        "gas_utilization_pct": (
            _ceil_pct(l2_receipt.gas_used, l2_receipt.gas_limit)
            if l2_receipt and l2_receipt.gas_limit else None
        ),
    }
