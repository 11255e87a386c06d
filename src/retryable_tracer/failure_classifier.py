#!/usr/bin/env python3
"""Failure classification for traced retryable tickets.

Two independent rule passes run over the receipts, the ticket parameters and
the lifecycle state: one decides where the message failed, the other why.
In each pass the first matching rule wins.
"""

import logging
from dataclasses import dataclass
from typing import Callable

from .event_decoder import ARB_WASM_ADDRESS, EventDecoder
from .models import (
    FailureClassification,
    FailureHint,
    FailureLocation,
    FailureReason,
    LifecycleResolution,
    LifecycleState,
    ReceiptSummary,
    Remediation,
    RevertData,
    Ticket,
)

logger = logging.getLogger(__name__)

MIN_GAS_CEILING = 100_000
MIN_SUBMISSION_VALUE = 1_000
# max fee must reach 12/10 of the average base fee
GAS_PRICE_MARGIN = (12, 10)
OUT_OF_GAS_UTILIZATION_PCT = 99
REMEDIATION_GAS_BUFFER = 150_000


def utilization_pct(gas_used: int, ceiling: int) -> int | None:
    """Gas used as a whole percentage of the ceiling, rounded up."""
    if ceiling <= 0:
        return None
    return -(-gas_used * 100 // ceiling)


def compute_remediation(gas_used: int, ceiling: int) -> Remediation:
    """
    Suggested gas ceiling for an out-of-gas execution.

    The suggestion is the gas used plus a fixed buffer. The percentage is the
    shortfall of the current ceiling, rounded up. When the execution stopped
    at or below the ceiling there is no shortfall, and the percentage is the
    step from the current ceiling to the suggestion instead.
    """
    suggested = gas_used + REMEDIATION_GAS_BUFFER
    percent = None
    if ceiling > 0:
        percent = utilization_pct(gas_used - ceiling, ceiling)
        if percent <= 0:
            percent = utilization_pct(suggested - ceiling, ceiling)
    return Remediation(
        current_gas_ceiling=ceiling,
        suggested_gas_ceiling=suggested,
        percent_increase=percent,
    )


def is_wasm_execution(receipt: ReceiptSummary | None) -> bool:
    """Whether a receipt involves the ArbWasm precompile."""
    if receipt is None:
        return False
    wasm = ARB_WASM_ADDRESS.lower()
    if receipt.to_address and receipt.to_address.lower() == wasm:
        return True
    return any((log.get("address") or "").lower() == wasm for log in receipt.logs)


@dataclass(frozen=True, slots=True)
class ClassificationInput:
    """Everything the classifier looks at for one trace.

    Attributes:
        l1_receipt: Receipt of the L1 submission, if found
        l2_receipt: Receipt of the L2 execution, if found
        ticket: The ticket created by the L1 submission, if any
        lifecycle: Resolved lifecycle of the ticket
        base_fee_average: Trailing average L2 base fee in wei
        revert: Trace output of the reverted L2 execution
    """

    l1_receipt: ReceiptSummary | None = None
    l2_receipt: ReceiptSummary | None = None
    ticket: Ticket | None = None
    lifecycle: LifecycleResolution | None = None
    base_fee_average: int | None = None
    revert: RevertData | None = None

    @property
    def execution_known(self) -> bool:
        """Whether the L2 execution outcome has been observed."""
        return self.l2_receipt is not None or bool(self.lifecycle and self.lifecycle.redeemed)

    @property
    def failed_receipt(self) -> ReceiptSummary | None:
        if self.l2_receipt is not None and self.l2_receipt.reverted:
            return self.l2_receipt
        if self.l1_receipt is not None and self.l1_receipt.reverted:
            return self.l1_receipt
        return None

    @property
    def gas_ceiling(self) -> int | None:
        """Ceiling the failed execution ran against."""
        receipt = self.failed_receipt
        if receipt is not None and receipt.gas_limit:
            return receipt.gas_limit
        if self.ticket is not None and self.ticket.gas_ceiling:
            return self.ticket.gas_ceiling
        return None


Rule = Callable[[ClassificationInput], bool]


class FailureClassifier:
    """
    Deterministic location and reason rules.
    """

    def __init__(self, decoder: EventDecoder) -> None:
        self.decoder = decoder
        self.location_rules: list[tuple[FailureLocation | Callable, Rule]] = [
            (FailureLocation.L1_SUBMISSION, self._l1_reverted),
            (self._redeem_location, self._redeemed),
            (FailureLocation.L2_EXECUTION, self._l2_reverted),
            (FailureLocation.AUTO_REDEEM, self._ticket_without_execution),
        ]
        self.reason_rules: list[tuple[FailureReason, Rule]] = [
            (FailureReason.LOW_GAS_LIMIT, self._low_gas_limit),
            (FailureReason.LOW_SUBMISSION_COST, self._low_submission_cost),
            (FailureReason.LOW_GAS_PRICE, self._low_gas_price),
            (FailureReason.TIMEOUT, self._expired),
            (FailureReason.OUT_OF_GAS, self._out_of_gas),
            (FailureReason.LOGIC_REVERT, self._logic_revert),
        ]

    def classify(self, facts: ClassificationInput) -> FailureClassification:
        """
        Classify a trace.

        Args:
            facts: Receipts, ticket and lifecycle gathered for the trace

        Returns:
            FailureClassification with location, reason and remediation
        """
        location = self.locate_failure(facts)
        reason = self.explain_failure(facts)

        remediation = None
        if reason is FailureReason.OUT_OF_GAS and (receipt := facts.failed_receipt) is not None:
            ceiling = (facts.ticket.gas_ceiling if facts.ticket else 0) or facts.gas_ceiling
            if ceiling:
                remediation = compute_remediation(receipt.gas_used, ceiling)

        wasm_type = self.classify_wasm_failure(facts, reason)
        classification = FailureClassification(
            location=location,
            reason=reason,
            message=self._revert_message(facts),
            remediation=remediation,
            hints=tuple(self._hints(facts)),
            wasm_failure_type=wasm_type,
        )
        logger.debug(f"Classified as {location.value}/{reason.value}")
        return classification

    def locate_failure(self, facts: ClassificationInput) -> FailureLocation:
        for location, rule in self.location_rules:
            if rule(facts):
                return location(facts) if callable(location) else location
        return FailureLocation.UNKNOWN

    def explain_failure(self, facts: ClassificationInput) -> FailureReason:
        for reason, rule in self.reason_rules:
            if rule(facts):
                return reason
        return FailureReason.UNKNOWN

    # Location rules

    @staticmethod
    def _l1_reverted(facts: ClassificationInput) -> bool:
        return facts.l1_receipt is not None and facts.l1_receipt.reverted

    @staticmethod
    def _redeemed(facts: ClassificationInput) -> bool:
        return facts.lifecycle is not None and facts.lifecycle.redeemed

    @staticmethod
    def _redeem_location(facts: ClassificationInput) -> FailureLocation:
        if facts.lifecycle.state is LifecycleState.AUTO_REDEEMED:
            return FailureLocation.AUTO_REDEEM
        return FailureLocation.MANUAL_REDEEM

    @staticmethod
    def _l2_reverted(facts: ClassificationInput) -> bool:
        return facts.l2_receipt is not None and facts.l2_receipt.reverted

    @staticmethod
    def _ticket_without_execution(facts: ClassificationInput) -> bool:
        return facts.ticket is not None and facts.l2_receipt is None

    # Reason rules. The parameter checks predict a failure before execution,
    # so they only apply while no execution outcome is known.

    @staticmethod
    def _low_gas_limit(facts: ClassificationInput) -> bool:
        ticket = facts.ticket
        return (
            ticket is not None
            and not facts.execution_known
            and 0 < ticket.gas_ceiling < MIN_GAS_CEILING
        )

    @staticmethod
    def _low_submission_cost(facts: ClassificationInput) -> bool:
        ticket = facts.ticket
        return (
            ticket is not None
            and not facts.execution_known
            and 0 < ticket.submission_value < MIN_SUBMISSION_VALUE
        )

    @staticmethod
    def _low_gas_price(facts: ClassificationInput) -> bool:
        ticket = facts.ticket
        if ticket is None or facts.execution_known or not facts.base_fee_average:
            return False
        numerator, denominator = GAS_PRICE_MARGIN
        return ticket.max_fee_per_gas * denominator < facts.base_fee_average * numerator

    @staticmethod
    def _expired(facts: ClassificationInput) -> bool:
        return facts.lifecycle is not None and facts.lifecycle.state is LifecycleState.EXPIRED

    @staticmethod
    def _out_of_gas(facts: ClassificationInput) -> bool:
        receipt = facts.failed_receipt
        if receipt is None:
            return False
        if facts.revert and facts.revert.error and "out of gas" in facts.revert.error.lower():
            return True
        if (ceiling := facts.gas_ceiling) is None:
            return False
        pct = utilization_pct(receipt.gas_used, ceiling)
        return pct is not None and pct >= OUT_OF_GAS_UTILIZATION_PCT

    def _logic_revert(self, facts: ClassificationInput) -> bool:
        return self._revert_message(facts) is not None or facts.failed_receipt is not None

    # Details

    def _revert_message(self, facts: ClassificationInput) -> str | None:
        if facts.revert is None or not facts.revert.output:
            return None
        return self.decoder.decode_revert_reason(facts.revert.output)

    def _hints(self, facts: ClassificationInput) -> list[FailureHint]:
        hints = []
        ticket = facts.ticket
        if facts.l1_receipt is not None and facts.l1_receipt.reverted:
            hints.append(FailureHint("L1_REVERT", "L1 transaction reverted; no ticket was created", "error"))
        if ticket is not None:
            if 0 < ticket.gas_ceiling < MIN_GAS_CEILING:
                hints.append(FailureHint(
                    "LOW_GAS_LIMIT",
                    f"Retryable gas limit {ticket.gas_ceiling} is below {MIN_GAS_CEILING}",
                ))
            if 0 < ticket.submission_value < MIN_SUBMISSION_VALUE:
                hints.append(FailureHint(
                    "LOW_SUBMISSION_COST",
                    f"Submission value {ticket.submission_value} wei is very low",
                ))
            if facts.base_fee_average:
                numerator, denominator = GAS_PRICE_MARGIN
                if ticket.max_fee_per_gas * denominator < facts.base_fee_average * numerator:
                    hints.append(FailureHint(
                        "LOW_GAS_PRICE",
                        f"maxFeePerGas {ticket.max_fee_per_gas} is below 1.2x the recent "
                        f"average base fee {facts.base_fee_average}",
                    ))
        if facts.lifecycle is not None and facts.lifecycle.lifetime_extensions:
            hints.append(FailureHint(
                "LIFETIME_EXTENDED",
                f"Ticket lifetime was extended {facts.lifecycle.lifetime_extensions} time(s)",
                "info",
            ))
        if is_wasm_execution(facts.l2_receipt):
            hints.append(FailureHint("STYLUS", "Execution involved a Stylus (WASM) contract", "info"))
        return hints

    def classify_wasm_failure(self, facts: ClassificationInput, reason: FailureReason) -> str | None:
        """WASM_PANIC, WASM_OUT_OF_GAS or WASM_REVERT for a reverted Stylus execution."""
        receipt = facts.l2_receipt
        if receipt is None or not receipt.reverted or not is_wasm_execution(receipt):
            return None
        if facts.revert and facts.revert.output:
            panic = self.decoder.decode_wasm_failure(facts.revert.output)
            if panic is not None and panic.code is not None:
                return "WASM_PANIC"
        if reason is FailureReason.OUT_OF_GAS:
            return "WASM_OUT_OF_GAS"
        return "WASM_REVERT"
