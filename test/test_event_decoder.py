#!/usr/bin/env python3
"""Unit tests for the EventDecoder module."""

from eth_abi import encode as abi_encode

from retryable_tracer.event_decoder import ARB_RETRYABLE_TX_ADDRESS, DecodeStatus
from retryable_tracer.models import LifecycleKind
from retryable_tracer.utils.hex_utility import int_to_topic

from conftest import CREATOR, DESTINATION, creation_log, lifecycle_log, tx_hash


class TestTicketCreation:
    """Decoding RetryableTicketCreated logs."""

    def test_decodes_full_log(self, decoder):
        log = creation_log(decoder, ticket_id=42, tx=tx_hash(1), block=123, gas_limit=90_000)

        tickets = decoder.decode_ticket_creation([log])

        assert len(tickets) == 1
        ticket = tickets[0]
        assert ticket.ticket_id == 42
        assert ticket.creating_tx_hash == tx_hash(1)
        assert ticket.creator == CREATOR
        assert ticket.destination == DESTINATION
        assert ticket.gas_ceiling == 90_000
        assert ticket.max_fee_per_gas == 100_000_000
        assert ticket.submission_value == 10**15
        assert ticket.payload == "0xcafe"
        assert ticket.creation_block == 123

    def test_log_without_metadata_is_raw_matched(self, decoder):
        log = creation_log(decoder, ticket_id=7, tx=tx_hash(2), block=10)
        bare = {"topics": log["topics"], "data": log["data"]}

        outcome = decoder.decode_creation_log(bare, tx_hash=tx_hash(2), block_number=10)

        assert outcome.status is DecodeStatus.RAW_MATCHED
        assert outcome.value.ticket_id == 7
        assert outcome.value.creation_block == 10
        assert decoder.logs_raw_matched == 1

    def test_topics_as_bytes(self, decoder):
        log = creation_log(decoder, ticket_id=9, tx=tx_hash(3), block=11)
        log["topics"] = [bytes.fromhex(topic[2:]) for topic in log["topics"]]

        tickets = decoder.decode_ticket_creation([log])

        assert [ticket.ticket_id for ticket in tickets] == [9]

    def test_unrelated_logs_are_skipped(self, decoder):
        transfer = {
            "address": DESTINATION,
            "topics": ["0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"],
            "data": "0x",
            "blockNumber": 1,
            "transactionHash": tx_hash(4),
            "logIndex": 0,
        }
        log = creation_log(decoder, ticket_id=5, tx=tx_hash(4), block=1, log_index=1)

        tickets = decoder.decode_ticket_creation([transfer, log])

        assert [ticket.ticket_id for ticket in tickets] == [5]
        assert decoder.logs_unrecognized == 1

    def test_duplicate_creation_is_ignored(self, decoder):
        first = creation_log(decoder, ticket_id=5, tx=tx_hash(5), block=1, gas_limit=1000)
        second = creation_log(decoder, ticket_id=5, tx=tx_hash(5), block=1, gas_limit=2000, log_index=1)

        tickets = decoder.decode_ticket_creation([first, second])

        assert len(tickets) == 1
        assert tickets[0].gas_ceiling == 1000

    def test_malformed_data_is_unrecognized(self, decoder):
        log = creation_log(decoder, ticket_id=5, tx=tx_hash(6), block=1)
        log["data"] = "0x1234"
        bare = {"topics": log["topics"], "data": log["data"]}

        outcome = decoder.decode_creation_log(bare, tx_hash=tx_hash(6), block_number=1)

        assert outcome.status is DecodeStatus.UNRECOGNIZED
        assert outcome.value is None


class TestLifecycleEvents:
    """Decoding precompile lifecycle logs."""

    def test_events_are_sorted_by_block(self, decoder):
        logs = [
            lifecycle_log(decoder, "Redeemed", 1, tx_hash(10), block=30),
            lifecycle_log(decoder, "TicketCreated", 1, tx_hash(11), block=10),
            lifecycle_log(decoder, "LifetimeExtended", 1, tx_hash(12), block=20,
                          data="0x" + abi_encode(["uint256"], [10**9]).hex()),
        ]

        events = decoder.decode_lifecycle_events(logs)

        assert [event.kind for event in events] == [
            LifecycleKind.CREATED,
            LifecycleKind.LIFETIME_EXTENDED,
            LifecycleKind.REDEEMED,
        ]
        assert [event.block_number for event in events] == [10, 20, 30]

    def test_canceled_is_not_a_lifecycle_event(self, decoder):
        log = lifecycle_log(decoder, "Canceled", 1, tx_hash(13), block=5)

        assert decoder.decode_lifecycle_events([log]) == []

    def test_wrong_emitter_is_ignored(self, decoder):
        log = lifecycle_log(decoder, "Redeemed", 1, tx_hash(14), block=5)
        log["address"] = DESTINATION

        assert decoder.decode_lifecycle_events([log]) == []

    def test_known_topic_alias_is_raw_matched(self, decoder):
        log = {
            "address": ARB_RETRYABLE_TX_ADDRESS,
            "topics": [
                "0x82498456531a1065f689ba348ce20bda781238c424cf36748dd40bc282831e03",
                int_to_topic(77),
            ],
            "data": "0x",
        }

        outcome = decoder.extract_ticket_id([log])

        assert outcome.matched
        assert outcome.value == 77


class TestExtractTicketId:
    """Ticket id recovery from L2 receipts."""

    def test_from_log_without_metadata(self, decoder):
        log = lifecycle_log(decoder, "Redeemed", 0xABC, tx_hash(15), block=5)
        bare = {"address": log["address"], "topics": log["topics"], "data": "0x"}

        outcome = decoder.extract_ticket_id([bare])

        assert outcome.status is DecodeStatus.RAW_MATCHED
        assert outcome.value == 0xABC

    def test_canceled_carries_ticket_id(self, decoder):
        log = lifecycle_log(decoder, "Canceled", 0xDEF, tx_hash(16), block=5)

        assert decoder.extract_ticket_id([log]).value == 0xDEF

    def test_no_precompile_log(self, decoder):
        outcome = decoder.extract_ticket_id([{"address": DESTINATION, "topics": [int_to_topic(1)], "data": "0x"}])

        assert outcome.status is DecodeStatus.UNRECOGNIZED
        assert outcome.value is None


class TestFailurePayloads:
    """Panic and error decoding."""

    def test_panic_code(self, decoder):
        data = bytes.fromhex("4e487b71") + (0x11).to_bytes(32, "big")

        panic = decoder.decode_wasm_failure(data)

        assert panic.code == 0x11
        assert panic.reason == "Arithmetic underflow or overflow"
        assert decoder.decode_revert_reason(data) == "Panic(0x11): Arithmetic underflow or overflow"

    def test_unknown_panic_code(self, decoder):
        data = bytes.fromhex("4e487b71") + (0x99).to_bytes(32, "big")

        assert decoder.decode_wasm_failure(data) is None

    def test_error_string(self, decoder):
        data = "0x08c379a0" + abi_encode(["string"], ["insufficient balance"]).hex()

        panic = decoder.decode_wasm_failure(data)

        assert panic.code is None
        assert panic.reason == "insufficient balance"
        assert decoder.decode_revert_reason(data) == "insufficient balance"

    def test_bare_utf8_message(self, decoder):
        assert decoder.decode_wasm_failure("not owner".encode()).reason == "not owner"

    def test_undecodable_payloads(self, decoder):
        assert decoder.decode_wasm_failure(b"") is None
        assert decoder.decode_wasm_failure(bytes.fromhex("deadbeef00ff")) is None
        assert decoder.decode_wasm_failure("0xzz") is None
        assert decoder.decode_wasm_failure(bytes.fromhex("08c379a0") + b"\x01") is None
        assert decoder.decode_revert_reason(b"\xff\xfe") is None
