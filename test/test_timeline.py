#!/usr/bin/env python3
"""Tests for timeline construction."""

from retryable_tracer.event_decoder import ARB_WASM_ADDRESS
from retryable_tracer.models import (
    FailureClassification,
    FailureLocation,
    FailureReason,
    Layer,
    LifecycleEvent,
    LifecycleKind,
    LifecycleResolution,
    LifecycleState,
    ReceiptSummary,
    Ticket,
)
from retryable_tracer.timeline import build_timeline, summarize_timeline

from conftest import CREATOR, DESTINATION, tx_hash

TICKET = Ticket(
    ticket_id=1,
    creating_tx_hash=tx_hash(1),
    creator=CREATOR,
    destination=DESTINATION,
    gas_ceiling=90_000,
    max_fee_per_gas=100_000_000,
    submission_value=500,
    payload="0x",
    creation_block=100,
)

L1_RECEIPT = ReceiptSummary(tx_hash=tx_hash(1), layer=Layer.L1, status=1, block_number=100,
                            gas_used=120_000, block_timestamp=1_700_000_000)


def test_pending_ticket():
    lifecycle = LifecycleResolution(
        ticket_id=1,
        state=LifecycleState.PENDING,
        source="deadline",
        events=(LifecycleEvent(LifecycleKind.CREATED, 1, 2000, tx_hash(3)),),
        auto_redeem_deadline=1_700_003_600,
    )
    classification = FailureClassification(FailureLocation.AUTO_REDEEM, FailureReason.LOW_GAS_LIMIT)

    actions = build_timeline(L1_RECEIPT, None, [TICKET], lifecycle, classification)

    assert [action.action for action in actions] == [
        "L1_TX_SUBMITTED",
        "RETRYABLE_CREATED",
        "TICKET_CREATED",
        "AUTO_REDEEM_ATTEMPT",
        "FAILURE",
    ]
    assert actions[0].timestamp == 1_700_000_000
    assert actions[3].status == "PENDING"
    assert actions[3].details["deadline"] == 1_700_003_600
    assert actions[-1].details["reason"] == "LOW_GAS_LIMIT"
    assert summarize_timeline(actions) == {"total": 5, "failures": 1, "terminal_action": "FAILURE"}


def test_failed_wasm_execution():
    l2_receipt = ReceiptSummary(tx_hash=tx_hash(2), layer=Layer.L2, status=0, block_number=2010,
                                gas_used=90_000, gas_limit=90_000, to_address=ARB_WASM_ADDRESS)
    classification = FailureClassification(FailureLocation.L2_EXECUTION, FailureReason.OUT_OF_GAS,
                                           wasm_failure_type="WASM_OUT_OF_GAS")

    actions = build_timeline(None, l2_receipt, [], None, classification)

    assert [action.action for action in actions] == ["L2_EXECUTION", "STYLUS_WASM_EXECUTION", "FAILURE"]
    assert actions[1].details["failure_type"] == "WASM_OUT_OF_GAS"
    assert summarize_timeline(actions)["failures"] == 3


def test_action_ids_are_ordered():
    classification = FailureClassification(FailureLocation.UNKNOWN, FailureReason.UNKNOWN)

    actions = build_timeline(L1_RECEIPT, None, [TICKET], None, classification)

    assert [action.id for action in actions] == ["1-l1_tx_submitted", "2-retryable_created"]


def test_empty_timeline():
    classification = FailureClassification(FailureLocation.UNKNOWN, FailureReason.UNKNOWN)

    assert summarize_timeline(build_timeline(None, None, [], None, classification))["terminal_action"] is None
