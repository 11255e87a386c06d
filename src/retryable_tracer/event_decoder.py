#!/usr/bin/env python3
"""Event decoding for retryable ticket logs.

This module turns raw L1 and L2 log entries into Ticket and LifecycleEvent
models, and decodes panic and error payloads from reverted executions.

Every log goes through two decode variants. The structured variant uses
the contract ABI through web3 and needs a log with full metadata (block
number, transaction hash, log index). Logs from traces or trimmed receipts
often lack that metadata, so the raw variant matches the topic signature
directly and decodes the data section with eth-abi. The result is a tagged
DecodeOutcome rather than a bare value or None.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from eth_abi import decode as abi_decode
from web3 import Web3

from .models import LifecycleEvent, LifecycleKind, Ticket, WasmPanic
from .utils.abi_utility import event_signature, find_event_abi, get_contract_abi
from .utils.hex_utility import (
    log_for_abi_decode,
    normalize_log,
    parse_topic_as_int,
    to_bytes,
    to_hex,
    topic_to_address,
)

logger = logging.getLogger(__name__)

ARB_RETRYABLE_TX_ADDRESS = "0x000000000000000000000000000000000000006E"
ARB_WASM_ADDRESS = "0x0000000000000000000000000000000000000071"

# Topics some RPC and trace sources report for the precompile events
KNOWN_PRECOMPILE_TOPICS: dict[str, str] = {
    "0x5ccd009502509cf28762c67858994d85b163bb6e451f5e9df7c5e18c9c2e123e": "TicketCreated",
    "0x82498456531a1065f689ba348ce20bda781238c424cf36748dd40bc282831e03": "Redeemed",
}

PANIC_SELECTOR = bytes.fromhex("4e487b71")
ERROR_SELECTOR = bytes.fromhex("08c379a0")

PANIC_CODES: dict[int, str] = {
    0x00: "Generic panic",
    0x01: "Assertion failed",
    0x11: "Arithmetic underflow or overflow",
    0x12: "Division or modulo by zero",
    0x21: "Invalid enum value",
    0x22: "Invalid encoding for storage",
    0x31: "Function called in uninitialized contract",
    0x32: "Function called after contract self-destructed",
    0x41: "Integer overflow during downcast",
    0x51: "Array access out of bounds",
    0x61: "Resource exhausted",
    0xFE: "Assertion or assertion-like failure",
    0xFF: "Internal error in Solidity",
}

CREATION_DATA_TYPES = ["address", "uint256", "address", "address", "uint256", "uint256", "bytes"]

LIFECYCLE_EVENT_KINDS: dict[str, LifecycleKind] = {
    "TicketCreated": LifecycleKind.CREATED,
    "Redeemed": LifecycleKind.REDEEMED,
    "LifetimeExtended": LifecycleKind.LIFETIME_EXTENDED,
}


class DecodeStatus(Enum):
    DECODED = "decoded"
    RAW_MATCHED = "raw_matched"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True, slots=True)
class DecodeOutcome:
    """Result of decoding a single log.

    Attributes:
        status: Which decode variant succeeded, if any
        value: The decoded model, None when unrecognized
    """

    status: DecodeStatus
    value: Any = None

    @property
    def matched(self) -> bool:
        return self.status is not DecodeStatus.UNRECOGNIZED


UNRECOGNIZED = DecodeOutcome(DecodeStatus.UNRECOGNIZED)


class EventDecoder:
    """Decodes retryable ticket creation and lifecycle logs.

    Keeps counters of how each log was handled so the decode quality of a
    provider can be inspected.
    """

    def __init__(self, w3: Web3 | None = None) -> None:
        """
        Initialize the decoder.

        Args:
            w3: Web3 instance used for its ABI codec. No requests are made.
        """
        self.w3 = w3 or Web3()

        inbox_abi = get_contract_abi("Inbox")
        retryable_abi = get_contract_abi("ArbRetryableTx")
        self._inbox = self.w3.eth.contract(abi=inbox_abi)
        self._retryable = self.w3.eth.contract(abi=retryable_abi)

        self.creation_topic = to_hex(Web3.keccak(
            text=event_signature(find_event_abi(inbox_abi, "RetryableTicketCreated"))
        ))

        # topic0 -> precompile event name
        self.precompile_topics: dict[str, str] = {}
        for name in ("TicketCreated", "Redeemed", "Canceled", "LifetimeExtended"):
            topic = to_hex(Web3.keccak(text=event_signature(find_event_abi(retryable_abi, name))))
            self.precompile_topics[topic] = name
        self._raw_precompile_topics = {**KNOWN_PRECOMPILE_TOPICS, **self.precompile_topics}

        self.logs_decoded = 0
        self.logs_raw_matched = 0
        self.logs_unrecognized = 0

    @property
    def lifecycle_topics(self) -> list[str]:
        """Topics of the lifecycle events, including known aliases."""
        return [
            topic for topic, name in self._raw_precompile_topics.items()
            if name in LIFECYCLE_EVENT_KINDS
        ]

    # Ticket creation (L1)

    def decode_creation_log(
        self,
        log: Any,
        tx_hash: str | None = None,
        block_number: int | None = None
    ) -> DecodeOutcome:
        """
        Decode a RetryableTicketCreated log.

        Args:
            log: Log entry in any provider format
            tx_hash: Fallback transaction hash when the log carries none
            block_number: Fallback block number when the log carries none

        Returns:
            DecodeOutcome whose value is a Ticket when matched
        """
        try:
            entry = normalize_log(log)
        except (TypeError, ValueError) as e:
            logger.debug(f"Skipping malformed log: {e}")
            return self._count(UNRECOGNIZED)

        topics = entry["topics"]
        if not topics or topics[0] != self.creation_topic:
            return self._count(UNRECOGNIZED)

        tx_hash = entry["transactionHash"] or tx_hash
        block_number = entry["blockNumber"] if entry["blockNumber"] is not None else block_number
        log_index = entry["logIndex"] or 0

        if (abi_log := log_for_abi_decode(entry)) is not None:
            try:
                event = self._inbox.events.RetryableTicketCreated().process_log(abi_log)
                args = event["args"]
                ticket = Ticket(
                    ticket_id=int(args["ticketId"]),
                    creating_tx_hash=to_hex(tx_hash),
                    creator=Web3.to_checksum_address(args["from"]),
                    destination=Web3.to_checksum_address(args["to"]),
                    gas_ceiling=int(args["gasLimit"]),
                    max_fee_per_gas=int(args["maxFeePerGas"]),
                    submission_value=int(args["l2CallValue"]),
                    payload=to_hex(args["data"]),
                    creation_block=int(block_number),
                    log_index=log_index,
                )
                return self._count(DecodeOutcome(DecodeStatus.DECODED, ticket))
            except Exception as e:
                logger.debug(f"Structured decode of creation log failed, trying raw match: {e}")

        if tx_hash is None or block_number is None or len(topics) < 3:
            return self._count(UNRECOGNIZED)

        try:
            (destination, call_value, _excess_refund, _value_refund,
             gas_limit, max_fee, data) = abi_decode(CREATION_DATA_TYPES, to_bytes(entry["data"]))
            ticket = Ticket(
                ticket_id=parse_topic_as_int(topics[1]),
                creating_tx_hash=to_hex(tx_hash),
                creator=topic_to_address(topics[2]),
                destination=Web3.to_checksum_address(destination),
                gas_ceiling=int(gas_limit),
                max_fee_per_gas=int(max_fee),
                submission_value=int(call_value),
                payload=to_hex(data),
                creation_block=int(block_number),
                log_index=log_index,
            )
        except Exception as e:
            logger.debug(f"Raw decode of creation log failed: {e}")
            return self._count(UNRECOGNIZED)

        return self._count(DecodeOutcome(DecodeStatus.RAW_MATCHED, ticket))

    def decode_ticket_creation(
        self,
        logs: Iterable[Any],
        tx_hash: str | None = None,
        block_number: int | None = None
    ) -> list[Ticket]:
        """
        Extract tickets from the logs of an L1 transaction.

        Non-matching logs are skipped. A second creation log for an id
        already seen is ignored.
        """
        tickets: list[Ticket] = []
        seen: set[int] = set()
        for log in logs:
            outcome = self.decode_creation_log(log, tx_hash=tx_hash, block_number=block_number)
            if not outcome.matched:
                continue
            ticket: Ticket = outcome.value
            if ticket.ticket_id in seen:
                logger.debug(f"Ignoring duplicate creation log for {ticket.ticket_id_hex}")
                continue
            seen.add(ticket.ticket_id)
            tickets.append(ticket)
        return tickets

    # Precompile events (L2)

    def _decode_precompile_log(self, log: Any) -> tuple[DecodeStatus, str | None, dict[str, Any] | None, int | None]:
        try:
            entry = normalize_log(log)
        except (TypeError, ValueError):
            return DecodeStatus.UNRECOGNIZED, None, None, None

        topics = entry["topics"]
        if len(topics) < 2:
            return DecodeStatus.UNRECOGNIZED, None, entry, None
        if entry["address"] is not None and entry["address"] != ARB_RETRYABLE_TX_ADDRESS.lower():
            return DecodeStatus.UNRECOGNIZED, None, entry, None

        if (name := self.precompile_topics.get(topics[0])) is not None:
            if (abi_log := log_for_abi_decode(entry)) is not None:
                try:
                    event = getattr(self._retryable.events, name)().process_log(abi_log)
                    ticket_id = int.from_bytes(bytes(event["args"]["ticketId"]), "big")
                    return DecodeStatus.DECODED, name, entry, ticket_id
                except Exception as e:
                    logger.debug(f"Structured decode of {name} failed, trying raw match: {e}")

        if (name := self._raw_precompile_topics.get(topics[0])) is not None:
            try:
                return DecodeStatus.RAW_MATCHED, name, entry, parse_topic_as_int(topics[1])
            except ValueError:
                pass

        return DecodeStatus.UNRECOGNIZED, None, entry, None

    def decode_lifecycle_log(
        self,
        log: Any,
        tx_hash: str | None = None,
        block_number: int | None = None
    ) -> DecodeOutcome:
        """Decode a TicketCreated, Redeemed or LifetimeExtended log."""
        status, name, entry, ticket_id = self._decode_precompile_log(log)
        if status is DecodeStatus.UNRECOGNIZED or name not in LIFECYCLE_EVENT_KINDS:
            return self._count(UNRECOGNIZED)

        event_block = entry["blockNumber"] if entry["blockNumber"] is not None else block_number
        event_tx = entry["transactionHash"] or tx_hash
        event = LifecycleEvent(
            kind=LIFECYCLE_EVENT_KINDS[name],
            ticket_id=ticket_id,
            block_number=int(event_block or 0),
            tx_hash=to_hex(event_tx) if event_tx else "",
            log_index=entry["logIndex"] or 0,
        )
        return self._count(DecodeOutcome(status, event))

    def decode_lifecycle_events(
        self,
        logs: Iterable[Any],
        tx_hash: str | None = None,
        block_number: int | None = None
    ) -> list[LifecycleEvent]:
        """
        Extract lifecycle events, ordered by block number then log index.

        Chunked log queries do not return entries in chronological order,
        so the result is always sorted.
        """
        events = [
            outcome.value
            for log in logs
            if (outcome := self.decode_lifecycle_log(log, tx_hash, block_number)).matched
        ]
        return sorted(events, key=lambda event: event.sort_key)

    def extract_ticket_id(self, logs: Iterable[Any]) -> DecodeOutcome:
        """
        Find the ticket id referenced by an L2 transaction's logs.

        Accepts any precompile event carrying a ticket id, Canceled included.

        Returns:
            DecodeOutcome whose value is the ticket id as an int
        """
        for log in logs:
            status, _name, _entry, ticket_id = self._decode_precompile_log(log)
            if status is not DecodeStatus.UNRECOGNIZED:
                return self._count(DecodeOutcome(status, ticket_id))
        return UNRECOGNIZED

    # Failure payloads

    def decode_wasm_failure(self, data: Any) -> WasmPanic | None:
        """
        Decode a Panic(uint256) payload, an Error(string) payload or a
        bare UTF-8 message.

        Unknown panic codes and anything else give None.
        """
        try:
            raw = to_bytes(data)
        except (TypeError, ValueError):
            return None
        if not raw:
            return None

        selector = raw[:4]
        if selector == PANIC_SELECTOR:
            if len(raw) < 36:
                return None
            code = int.from_bytes(raw[4:36], "big")
            if (reason := PANIC_CODES.get(code)) is None:
                return None
            return WasmPanic(code=code, reason=reason)

        if selector == ERROR_SELECTOR:
            try:
                (message,) = abi_decode(["string"], raw[4:])
            except Exception as e:
                logger.debug(f"Undecodable Error(string) payload: {e}")
                return None
            return WasmPanic(code=None, reason=message)

        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
        if text.isprintable():
            return WasmPanic(code=None, reason=text)
        return None

    def decode_revert_reason(self, data: Any) -> str | None:
        """Render revert data as a message, or None when undecodable."""
        if (panic := self.decode_wasm_failure(data)) is None:
            return None
        if panic.code is not None:
            return f"Panic(0x{panic.code:02x}): {panic.reason}"
        return panic.reason

    def _count(self, outcome: DecodeOutcome) -> DecodeOutcome:
        match outcome.status:
            case DecodeStatus.DECODED:
                self.logs_decoded += 1
            case DecodeStatus.RAW_MATCHED:
                self.logs_raw_matched += 1
            case DecodeStatus.UNRECOGNIZED:
                self.logs_unrecognized += 1
        return outcome

    def get_metrics(self) -> dict[str, int]:
        """
        Get decoding metrics.

        Returns:
            Dictionary of decode counters
        """
        return {
            "logs_decoded": self.logs_decoded,
            "logs_raw_matched": self.logs_raw_matched,
            "logs_unrecognized": self.logs_unrecognized,
        }

    def log_metrics(self) -> None:
        """Log current decoding metrics."""
        metrics = self.get_metrics()
        logger.info(
            f"Decoder metrics - Decoded: {metrics['logs_decoded']}, "
            f"Raw matched: {metrics['logs_raw_matched']}, "
            f"Unrecognized: {metrics['logs_unrecognized']}"
        )
