#!/usr/bin/env python3
"""Shared fixtures: in-memory ledgers shaped like AsyncWeb3."""

import asyncio
from typing import Any

import pytest
from eth_abi import encode as abi_encode
from web3 import Web3
from web3.exceptions import TransactionNotFound

from retryable_tracer.config import IndexerConfig, QueryConfig, TracerConfig
from retryable_tracer.event_decoder import ARB_RETRYABLE_TX_ADDRESS, CREATION_DATA_TYPES, EventDecoder
from retryable_tracer.index_store import TicketIndexStore
from retryable_tracer.utils.hex_utility import int_to_topic
from retryable_tracer.utils.provider_registry import ProviderRegistry

CREATOR = Web3.to_checksum_address("0x1234567890abcdef1234567890abcdef12345678")
DESTINATION = Web3.to_checksum_address("0xabcdef1234567890abcdef1234567890abcdef12")
REFUND = "0x0000000000000000000000000000000000000abc"


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


class FakeEth:
    """The subset of AsyncWeb3.eth the tracer uses."""

    def __init__(self, head: int = 1000) -> None:
        self.head = head
        self.receipts: dict[str, dict[str, Any]] = {}
        self.transactions: dict[str, dict[str, Any]] = {}
        self.blocks: dict[int, dict[str, Any]] = {}
        self.logs: list[dict[str, Any]] = []
        self.get_logs_calls: list[dict[str, Any]] = []
        self.receipt_error: Exception | None = None
        self.logs_error: Exception | None = None
        self.delay = 0.0

    async def _value(self, value: Any) -> Any:
        return value

    @property
    def block_number(self):
        return self._value(self.head)

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.receipt_error is not None:
            raise self.receipt_error
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"Transaction with hash: '{tx_hash}' not found.")
        return self.receipts[tx_hash]

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        if tx_hash not in self.transactions:
            raise TransactionNotFound(f"Transaction with hash: '{tx_hash}' not found.")
        return self.transactions[tx_hash]

    async def get_block(self, number: int) -> dict[str, Any]:
        if number not in self.blocks:
            raise ValueError(f"Block {number} not found")
        return self.blocks[number]

    async def get_logs(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        self.get_logs_calls.append(params)
        if self.logs_error is not None:
            raise self.logs_error

        address = params.get("address")
        addresses = {a.lower() for a in ([address] if isinstance(address, str) else address or [])}
        matched = []
        for log in self.logs:
            if not params["fromBlock"] <= log["blockNumber"] <= params["toBlock"]:
                continue
            if addresses and log["address"].lower() not in addresses:
                continue
            if not _topics_match(params.get("topics") or [], log["topics"]):
                continue
            matched.append(log)
        return matched


def _topics_match(wanted: list[Any], topics: list[str]) -> bool:
    for position, option in enumerate(wanted):
        if option is None:
            continue
        if position >= len(topics):
            return False
        options = option if isinstance(option, list) else [option]
        if topics[position].lower() not in {o.lower() for o in options}:
            return False
    return True


class FakeProvider:
    def __init__(self) -> None:
        self.trace_response: dict[str, Any] = {"result": {}}

    async def make_request(self, method: str, params: list[Any]) -> dict[str, Any]:
        return self.trace_response


class FakeWeb3:
    def __init__(self, head: int = 1000) -> None:
        self.eth = FakeEth(head)
        self.provider = FakeProvider()


def add_receipt(
    w3: FakeWeb3,
    tx: str,
    status: int = 1,
    block: int = 100,
    gas_used: int = 21000,
    gas_limit: int | None = 100000,
    logs: list[dict[str, Any]] | None = None,
    to: str | None = DESTINATION
) -> None:
    w3.eth.receipts[tx] = {
        "transactionHash": bytes.fromhex(tx[2:]),
        "status": status,
        "blockNumber": block,
        "gasUsed": gas_used,
        "from": CREATOR,
        "to": to,
        "logs": logs or [],
        "effectiveGasPrice": 100_000_000,
    }
    if gas_limit is not None:
        w3.eth.transactions[tx] = {"hash": tx, "gas": gas_limit}


def creation_log(
    decoder: EventDecoder,
    ticket_id: int,
    tx: str,
    block: int,
    gas_limit: int = 300_000,
    max_fee: int = 100_000_000,
    call_value: int = 10**15,
    data: bytes = b"\xca\xfe",
    log_index: int = 0,
    address: str = "0x4Dbd4fc535Ac27206064B68FfCf827b0A60BAB3f"
) -> dict[str, Any]:
    encoded = abi_encode(
        CREATION_DATA_TYPES,
        [DESTINATION, call_value, REFUND, REFUND, gas_limit, max_fee, data]
    )
    return {
        "address": address,
        "topics": [
            decoder.creation_topic,
            int_to_topic(ticket_id),
            "0x" + "00" * 12 + CREATOR[2:].lower(),
        ],
        "data": "0x" + encoded.hex(),
        "blockNumber": block,
        "transactionHash": tx,
        "transactionIndex": 0,
        "blockHash": "0x" + "11" * 32,
        "logIndex": log_index,
    }


def lifecycle_log(
    decoder: EventDecoder,
    event_name: str,
    ticket_id: int,
    tx: str,
    block: int,
    log_index: int = 0,
    data: str = "0x"
) -> dict[str, Any]:
    topic = next(t for t, name in decoder.precompile_topics.items() if name == event_name)
    return {
        "address": ARB_RETRYABLE_TX_ADDRESS,
        "topics": [topic, int_to_topic(ticket_id)],
        "data": data,
        "blockNumber": block,
        "transactionHash": tx,
        "transactionIndex": 0,
        "blockHash": "0x" + "22" * 32,
        "logIndex": log_index,
    }


@pytest.fixture
def decoder():
    return EventDecoder()


@pytest.fixture
def store(tmp_path):
    return TicketIndexStore(tmp_path / "tickets.db")


@pytest.fixture
def l1():
    return FakeWeb3(head=5000)


@pytest.fixture
def l2():
    return FakeWeb3(head=90000)


@pytest.fixture
def registry(l1, l2):
    return ProviderRegistry(l1=l1, l2=l2)


@pytest.fixture
def config(tmp_path):
    return TracerConfig(
        network="custom",
        l1_rpc_url="http://l1.invalid",
        l2_rpc_url="http://l2.invalid",
        query=QueryConfig(rpc_timeout=1.0, request_budget=5.0),
        indexer=IndexerConfig(
            db_path=str(tmp_path / "tickets.db"),
            state_path=str(tmp_path / "state.json"),
        ),
    )
