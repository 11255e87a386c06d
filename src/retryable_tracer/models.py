#!/usr/bin/env python3
"""Data models for the retryable ticket tracer.

This module provides immutable data classes for representing retryable
tickets, their lifecycle and the classification produced for a traced
transaction.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Layer(Enum):
    """Ledger on which a transaction was found."""
    L1 = "L1"
    L2 = "L2"
    BOTH = "BOTH"
    UNKNOWN = "UNKNOWN"


class LifecycleKind(Enum):
    CREATED = "created"
    REDEEMED = "redeemed"
    LIFETIME_EXTENDED = "lifetime_extended"


class LifecycleState(Enum):
    PENDING = "PENDING"
    AUTO_REDEEMED = "AUTO_REDEEMED"
    MANUALLY_REDEEMED = "MANUALLY_REDEEMED"
    EXPIRED = "EXPIRED"


class FailureLocation(Enum):
    L1_SUBMISSION = "L1_SUBMISSION"
    RETRYABLE_CREATION = "RETRYABLE_CREATION"
    AUTO_REDEEM = "AUTO_REDEEM"
    MANUAL_REDEEM = "MANUAL_REDEEM"
    L2_EXECUTION = "L2_EXECUTION"
    UNKNOWN = "UNKNOWN"


class FailureReason(Enum):
    OUT_OF_GAS = "OUT_OF_GAS"
    LOGIC_REVERT = "LOGIC_REVERT"
    TIMEOUT = "TIMEOUT"
    LOW_SUBMISSION_COST = "LOW_SUBMISSION_COST"
    LOW_GAS_LIMIT = "LOW_GAS_LIMIT"
    LOW_GAS_PRICE = "LOW_GAS_PRICE"
    UNKNOWN = "UNKNOWN"


class CausalChain(Enum):
    L1_CAUSED = "L1_CAUSED"
    L2_CAUSED = "L2_CAUSED"
    UNKNOWN = "UNKNOWN"


def ticket_id_to_hex(ticket_id: int) -> str:
    """Render a ticket id as a 0x-prefixed 32-byte hex string."""
    return "0x" + ticket_id.to_bytes(32, "big").hex()


@dataclass(frozen=True, slots=True)
class Ticket:
    """A retryable ticket created on L1.

    Attributes:
        ticket_id: Unique ticket identifier (uint256)
        creating_tx_hash: L1 transaction that emitted the creation log
        creator: Address that submitted the ticket
        destination: L2 call target
        gas_ceiling: Gas limit reserved for the L2 execution
        max_fee_per_gas: Max fee per gas offered for the L2 execution
        submission_value: Value forwarded with the L2 call
        payload: Call data as 0x-prefixed hex
        creation_block: L1 block containing the creation log
        log_index: Index of the creation log in its block
    """

    ticket_id: int
    creating_tx_hash: str
    creator: str
    destination: str
    gas_ceiling: int
    max_fee_per_gas: int
    submission_value: int
    payload: str
    creation_block: int
    log_index: int = 0

    def __str__(self) -> str:
        return (
            f"Ticket(id={self.ticket_id_hex[:12]}..., "
            f"tx={self.creating_tx_hash[:10]}..., "
            f"gas={self.gas_ceiling}, block={self.creation_block})"
        )

    @property
    def ticket_id_hex(self) -> str:
        return ticket_id_to_hex(self.ticket_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "ticket_id": self.ticket_id_hex,
            "creating_tx_hash": self.creating_tx_hash,
            "creator": self.creator,
            "destination": self.destination,
            "gas_ceiling": str(self.gas_ceiling),
            "max_fee_per_gas": str(self.max_fee_per_gas),
            "submission_value": str(self.submission_value),
            "payload": self.payload,
            "creation_block": self.creation_block,
            "log_index": self.log_index,
        }


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    """A TicketCreated, Redeemed or LifetimeExtended log seen on L2."""

    kind: LifecycleKind
    ticket_id: int
    block_number: int
    tx_hash: str
    log_index: int = 0

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "ticket_id": ticket_id_to_hex(self.ticket_id),
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
        }


@dataclass(frozen=True, slots=True)
class Settlement:
    """The L2 transaction that redeemed a ticket."""

    ticket_id: int
    settling_tx_hash: str
    settling_block: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket_id": ticket_id_to_hex(self.ticket_id),
            "settling_tx_hash": self.settling_tx_hash,
            "settling_block": self.settling_block,
        }


@dataclass(frozen=True, slots=True)
class WasmPanic:
    """Decoded failure data from a reverted execution.

    Attributes:
        code: Panic code for Panic(uint256) payloads, None for error strings
        reason: Human readable reason
    """

    code: int | None
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": f"0x{self.code:02x}" if self.code is not None else None,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class WasmFailure:
    """Failure metadata recorded for a reverted L2 transaction."""

    tx_hash: str
    ticket_id: int | None = None
    panic_code: int | None = None
    panic_reason: str | None = None
    gas_used: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "ticket_id": ticket_id_to_hex(self.ticket_id) if self.ticket_id is not None else None,
            "panic_code": f"0x{self.panic_code:02x}" if self.panic_code is not None else None,
            "panic_reason": self.panic_reason,
            "gas_used": self.gas_used,
        }


@dataclass(frozen=True, slots=True)
class IndexRecord:
    """Persisted projection of a ticket and what is known about its outcome."""

    ticket: Ticket
    settlement: Settlement | None = None
    wasm_failure: WasmFailure | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket": self.ticket.to_dict(),
            "settlement": self.settlement.to_dict() if self.settlement else None,
            "wasm_failure": self.wasm_failure.to_dict() if self.wasm_failure else None,
        }


@dataclass(frozen=True, slots=True)
class ReceiptSummary:
    """Normalised view of a transaction receipt.

    Attributes:
        tx_hash: Lower-case 0x-prefixed transaction hash
        layer: Ledger the receipt was read from
        status: 1 for success, 0 for revert
        block_number: Block containing the transaction
        gas_used: Gas consumed by the transaction
        gas_limit: Gas limit of the transaction, when it could be read
        from_address: Sender
        to_address: Recipient, None for contract creation
        logs: Raw log entries as dictionaries
        effective_gas_price: Price paid per gas unit
        block_timestamp: Unix time of the containing block, when known
    """

    tx_hash: str
    layer: Layer
    status: int
    block_number: int
    gas_used: int
    gas_limit: int | None = None
    from_address: str | None = None
    to_address: str | None = None
    logs: tuple[dict[str, Any], ...] = ()
    effective_gas_price: int | None = None
    block_timestamp: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @property
    def reverted(self) -> bool:
        return self.status == 0

    @property
    def gas_utilization(self) -> float | None:
        if not self.gas_limit:
            return None
        return self.gas_used / self.gas_limit

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "layer": self.layer.value,
            "status": self.status,
            "block_number": self.block_number,
            "gas_used": str(self.gas_used),
            "gas_limit": str(self.gas_limit) if self.gas_limit is not None else None,
            "from": self.from_address,
            "to": self.to_address,
            "log_count": len(self.logs),
            "effective_gas_price": (
                str(self.effective_gas_price) if self.effective_gas_price is not None else None
            ),
            "block_timestamp": self.block_timestamp,
        }


@dataclass(frozen=True, slots=True)
class BranchError:
    """A failure recorded for one branch of a trace request."""

    source: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"source": self.source, "message": self.message}


@dataclass(frozen=True, slots=True)
class LocateResult:
    """Outcome of looking a transaction hash up on both ledgers."""

    tx_hash: str
    on_layer: Layer
    l1_receipt: ReceiptSummary | None = None
    l2_receipt: ReceiptSummary | None = None
    errors: tuple[BranchError, ...] = ()


@dataclass(frozen=True, slots=True)
class RevertData:
    """Output of a transaction trace for a reverted execution."""

    output: bytes | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class LifecycleResolution:
    """Derived lifecycle state of a ticket and the evidence behind it.

    Attributes:
        ticket_id: Ticket identifier
        state: Derived lifecycle state
        source: Strategy that produced the state (index, live_scan, deadline)
        events: Lifecycle events seen, ordered by block
        settlement: Redeeming transaction, if one is known
        creation_block: Block used as creation reference for the redeem distance
        redeem_block: Block of the first redemption
        auto_redeem_deadline: Unix time the auto-redeem window closes
        manual_redeem_deadline: Unix time the ticket expires
        lifetime_extensions: Number of LifetimeExtended events
        errors: Failures of strategies that were skipped
    """

    ticket_id: int
    state: LifecycleState
    source: str
    events: tuple[LifecycleEvent, ...] = ()
    settlement: Settlement | None = None
    creation_block: int | None = None
    redeem_block: int | None = None
    auto_redeem_deadline: int | None = None
    manual_redeem_deadline: int | None = None
    lifetime_extensions: int = 0
    errors: tuple[BranchError, ...] = ()

    @property
    def redeemed(self) -> bool:
        return self.state in (LifecycleState.AUTO_REDEEMED, LifecycleState.MANUALLY_REDEEMED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket_id": ticket_id_to_hex(self.ticket_id),
            "state": self.state.value,
            "source": self.source,
            "events": [event.to_dict() for event in self.events],
            "settlement": self.settlement.to_dict() if self.settlement else None,
            "creation_block": self.creation_block,
            "redeem_block": self.redeem_block,
            "auto_redeem_deadline": self.auto_redeem_deadline,
            "manual_redeem_deadline": self.manual_redeem_deadline,
            "lifetime_extensions": self.lifetime_extensions,
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass(frozen=True, slots=True)
class Remediation:
    """Numeric fix suggested for an out-of-gas ticket."""

    current_gas_ceiling: int
    suggested_gas_ceiling: int
    percent_increase: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_gas_ceiling": str(self.current_gas_ceiling),
            "suggested_gas_ceiling": str(self.suggested_gas_ceiling),
            "percent_increase": self.percent_increase,
        }


@dataclass(frozen=True, slots=True)
class FailureHint:
    kind: str
    message: str
    severity: str = "warning"

    def to_dict(self) -> dict[str, str]:
        return {"type": self.kind, "message": self.message, "severity": self.severity}


@dataclass(frozen=True, slots=True)
class FailureClassification:
    """Where and why a cross-layer message failed."""

    location: FailureLocation
    reason: FailureReason
    message: str | None = None
    remediation: Remediation | None = None
    hints: tuple[FailureHint, ...] = ()
    wasm_failure_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "failure_at": self.location.value,
            "failure_reason": self.reason.value,
            "failure_message": self.message,
            "remediation": self.remediation.to_dict() if self.remediation else None,
            "hints": [hint.to_dict() for hint in self.hints],
            "wasm_failure_type": self.wasm_failure_type,
        }


@dataclass(frozen=True, slots=True)
class Recommendation:
    priority: str
    action: str
    current: str | None
    suggested: str | None
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "priority": self.priority,
            "action": self.action,
            "current": self.current,
            "suggested": self.suggested,
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True, slots=True)
class Explanation:
    """Human readable account of a classification."""

    chain: CausalChain
    human_message: str
    recommendations: tuple[Recommendation, ...] = ()
    causality_type: str = "UNKNOWN"

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain": self.chain.value,
            "causality_type": self.causality_type,
            "human_message": self.human_message,
            "recommendations": [rec.to_dict() for rec in self.recommendations],
        }


@dataclass(frozen=True, slots=True)
class TimelineAction:
    """One step of the ordered cross-layer timeline."""

    id: str
    action: str
    status: str
    block_number: int | None = None
    timestamp: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "status": self.status,
            "block_number": self.block_number,
            "timestamp": self.timestamp,
            "details": self.details,
        }


@dataclass(frozen=True, slots=True)
class TraceResult:
    """Structured answer for one traced transaction hash."""

    tx_hash: str
    found_on: Layer
    classification: FailureClassification
    explanation: Explanation
    timeline: tuple[TimelineAction, ...] = ()
    timeline_summary: dict[str, Any] = field(default_factory=dict)
    causal_graph: dict[str, Any] = field(default_factory=dict)
    tickets: tuple[Ticket, ...] = ()
    lifecycle: LifecycleResolution | None = None
    parent_l1_tx_hash: str | None = None
    wasm_failure: WasmFailure | None = None
    l1_receipt: ReceiptSummary | None = None
    l2_receipt: ReceiptSummary | None = None
    errors: tuple[BranchError, ...] = ()
    timings: dict[str, int] = field(default_factory=dict)
    response_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for the response renderer."""
        return {
            "tx_hash": self.tx_hash,
            "found_on": self.found_on.value,
            **self.classification.to_dict(),
            "explanation": self.explanation.to_dict(),
            "timeline": [action.to_dict() for action in self.timeline],
            "timeline_summary": self.timeline_summary,
            "causal_graph": self.causal_graph,
            "tickets": [ticket.to_dict() for ticket in self.tickets],
            "lifecycle": self.lifecycle.to_dict() if self.lifecycle else None,
            "parent_l1_tx_hash": self.parent_l1_tx_hash,
            "wasm_failure": self.wasm_failure.to_dict() if self.wasm_failure else None,
            "raw_data": {
                "l1_receipt": self.l1_receipt.to_dict() if self.l1_receipt else None,
                "l2_receipt": self.l2_receipt.to_dict() if self.l2_receipt else None,
                "l1_logs": list(self.l1_receipt.logs) if self.l1_receipt else [],
                "l2_logs": list(self.l2_receipt.logs) if self.l2_receipt else [],
            },
            "errors": [error.to_dict() for error in self.errors],
            "timings": self.timings,
            "response_time_ms": self.response_time_ms,
        }
