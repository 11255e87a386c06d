"""
Ordered timeline of the cross-layer actions observed for a trace.
"""

from typing import Any

from .failure_classifier import is_wasm_execution
from .models import (
    FailureClassification,
    FailureReason,
    LifecycleKind,
    LifecycleResolution,
    ReceiptSummary,
    Ticket,
    TimelineAction,
)

LIFECYCLE_ACTIONS = {
    LifecycleKind.CREATED: "TICKET_CREATED",
    LifecycleKind.REDEEMED: "REDEEMED",
    LifecycleKind.LIFETIME_EXTENDED: "LIFETIME_EXTENDED",
}


def _status(receipt: ReceiptSummary) -> str:
    return "SUCCESS" if receipt.succeeded else "FAILED"


def build_timeline(
    l1_receipt: ReceiptSummary | None,
    l2_receipt: ReceiptSummary | None,
    tickets: list[Ticket] | tuple[Ticket, ...],
    lifecycle: LifecycleResolution | None,
    classification: FailureClassification
) -> list[TimelineAction]:
    """
    Build the ordered list of actions for a trace.

    L1 actions come first, then lifecycle events in block order, then the L2
    execution and the failure, if any.
    """
    actions: list[TimelineAction] = []

    def add(action: str, status: str, block: int | None = None,
            timestamp: int | None = None, **details: Any) -> None:
        actions.append(TimelineAction(
            id=f"{len(actions) + 1}-{action.lower()}",
            action=action,
            status=status,
            block_number=block,
            timestamp=timestamp,
            details=details,
        ))

    if l1_receipt is not None:
        add("L1_TX_SUBMITTED", _status(l1_receipt), l1_receipt.block_number, l1_receipt.block_timestamp,
            tx_hash=l1_receipt.tx_hash, gas_used=str(l1_receipt.gas_used))

    for ticket in tickets:
        add("RETRYABLE_CREATED", "SUCCESS", ticket.creation_block,
            ticket_id=ticket.ticket_id_hex, destination=ticket.destination,
            gas_limit=str(ticket.gas_ceiling), max_fee_per_gas=str(ticket.max_fee_per_gas))

    if lifecycle is not None:
        for event in lifecycle.events:
            add(LIFECYCLE_ACTIONS[event.kind], "SUCCESS", event.block_number,
                tx_hash=event.tx_hash, ticket_id=f"{event.ticket_id:#066x}")
        if tickets and not lifecycle.redeemed and l2_receipt is None:
            add("AUTO_REDEEM_ATTEMPT", lifecycle.state.value,
                deadline=lifecycle.auto_redeem_deadline)

    if l2_receipt is not None:
        add("L2_EXECUTION", _status(l2_receipt), l2_receipt.block_number, l2_receipt.block_timestamp,
            tx_hash=l2_receipt.tx_hash, gas_used=str(l2_receipt.gas_used))
        if is_wasm_execution(l2_receipt):
            add("STYLUS_WASM_EXECUTION", _status(l2_receipt), l2_receipt.block_number,
                failure_type=classification.wasm_failure_type)

    if classification.reason is not FailureReason.UNKNOWN:
        add("FAILURE", "FAILED",
            location=classification.location.value,
            reason=classification.reason.value,
            message=classification.message)

    return actions


def summarize_timeline(actions: list[TimelineAction]) -> dict[str, Any]:
    """Counts and terminal action of a timeline."""
    return {
        "total": len(actions),
        "failures": sum(1 for action in actions if action.status == "FAILED"),
        "terminal_action": actions[-1].action if actions else None,
    }
