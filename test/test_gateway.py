#!/usr/bin/env python3
"""Tests for the ledger gateway."""

import pytest

from retryable_tracer.gateway import LedgerGateway, average_base_fee, summarize_receipt
from retryable_tracer.models import Layer
from retryable_tracer.utils.provider_registry import ProviderRegistry

from conftest import CREATOR, DESTINATION, FakeWeb3, add_receipt, tx_hash


@pytest.fixture
def gateway(registry):
    return LedgerGateway(registry, timeout=0.2, block_timeout=0.2)


def add_fee_blocks(w3, fees: dict[int, int]) -> None:
    for number, fee in fees.items():
        w3.eth.blocks[number] = {"number": number, "baseFeePerGas": fee, "timestamp": 1_700_000_000 + number}


class TestLocate:

    @pytest.mark.asyncio
    async def test_found_on_l1(self, gateway, l1):
        add_receipt(l1, tx_hash(1), gas_used=50_000, gas_limit=80_000)

        result = await gateway.locate(tx_hash(1))

        assert result.on_layer is Layer.L1
        assert result.l2_receipt is None
        assert result.errors == ()
        receipt = result.l1_receipt
        assert receipt.tx_hash == tx_hash(1)
        assert receipt.layer is Layer.L1
        assert receipt.gas_used == 50_000
        assert receipt.gas_limit == 80_000
        assert receipt.from_address == CREATOR
        assert receipt.to_address == DESTINATION

    @pytest.mark.asyncio
    async def test_found_on_l2(self, gateway, l2):
        add_receipt(l2, tx_hash(2), status=0)

        result = await gateway.locate(tx_hash(2))

        assert result.on_layer is Layer.L2
        assert result.l2_receipt.reverted

    @pytest.mark.asyncio
    async def test_found_on_both(self, gateway, l1, l2):
        add_receipt(l1, tx_hash(3))
        add_receipt(l2, tx_hash(3))

        assert (await gateway.locate(tx_hash(3))).on_layer is Layer.BOTH

    @pytest.mark.asyncio
    async def test_unknown_hash_is_not_an_error(self, gateway):
        result = await gateway.locate(tx_hash(4))

        assert result.on_layer is Layer.UNKNOWN
        assert result.errors == ()

    @pytest.mark.asyncio
    async def test_transport_error_is_recorded(self, gateway, l1, l2):
        l1.eth.receipt_error = ConnectionError("connection refused")
        add_receipt(l2, tx_hash(5))

        result = await gateway.locate(tx_hash(5))

        assert result.on_layer is Layer.L2
        assert len(result.errors) == 1
        assert result.errors[0].source == "L1"
        assert "connection refused" in result.errors[0].message

    @pytest.mark.asyncio
    async def test_timeout_is_recorded(self, gateway, l1, l2):
        l1.eth.delay = 1.0
        l2.eth.receipt_error = ConnectionError("down")

        result = await gateway.locate(tx_hash(6))

        assert result.on_layer is Layer.UNKNOWN
        assert {error.source for error in result.errors} == {"L1", "L2"}
        assert any("Timed out" in error.message for error in result.errors)

    @pytest.mark.asyncio
    async def test_missing_gas_limit(self, gateway, l1):
        add_receipt(l1, tx_hash(7), gas_limit=None)

        receipt = (await gateway.locate(tx_hash(7))).l1_receipt

        assert receipt.gas_limit is None
        assert receipt.gas_utilization is None


class TestBaseFee:

    def test_average_of_samples(self):
        assert average_base_fee([1_000_000_000, 1_200_000_000, 800_000_000]) == 1_000_000_000

    def test_average_truncates(self):
        assert average_base_fee([1, 2]) == 1

    def test_empty_sample(self):
        assert average_base_fee([]) is None

    @pytest.mark.asyncio
    async def test_missing_blocks_are_skipped(self, gateway, l2):
        add_fee_blocks(l2, {89_998: 1_000_000_000, 89_999: 1_200_000_000, 90_000: 800_000_000})

        assert await gateway.average_base_fee(10) == 1_000_000_000

    @pytest.mark.asyncio
    async def test_no_blocks_answer(self, gateway):
        assert await gateway.average_base_fee(5) is None

    @pytest.mark.asyncio
    async def test_gas_price_history(self, gateway, l2):
        add_fee_blocks(l2, {89_999: 300, 90_000: 100})

        history = await gateway.gas_price_history(3)

        assert [entry["block_number"] for entry in history["history"]] == [89_999, 90_000]
        assert history["average"] == 200
        assert history["min"] == 100
        assert history["max"] == 300


class TestLogsAndTraces:

    @pytest.mark.asyncio
    async def test_get_logs_normalises_entries(self, gateway, l1):
        l1.eth.logs.append({
            "address": DESTINATION,
            "topics": [bytes(32)],
            "data": b"\x01",
            "blockNumber": 10,
            "transactionHash": bytes.fromhex(tx_hash(8)[2:]),
            "logIndex": 0,
        })

        logs = await gateway.get_logs(Layer.L1, 0, 20, [None], address=DESTINATION)

        assert logs[0]["topics"] == ["0x" + "00" * 32]
        assert logs[0]["data"] == "0x01"
        assert logs[0]["transactionHash"] == tx_hash(8)
        assert l1.eth.get_logs_calls[0]["address"] == DESTINATION

    @pytest.mark.asyncio
    async def test_revert_data(self, gateway, l2):
        l2.provider.trace_response = {"result": {"output": "0x4e487b71", "error": "execution reverted"}}

        revert = await gateway.fetch_revert_data(tx_hash(9))

        assert revert.output == bytes.fromhex("4e487b71")
        assert revert.error == "execution reverted"

    @pytest.mark.asyncio
    async def test_revert_data_prefers_debug_endpoint(self, l1, l2):
        debug = FakeWeb3()
        debug.provider.trace_response = {"result": {"error": "out of gas"}}
        gateway = LedgerGateway(ProviderRegistry(l1=l1, l2=l2, debug=debug))

        revert = await gateway.fetch_revert_data(tx_hash(10))

        assert revert.output is None
        assert revert.error == "out of gas"

    @pytest.mark.asyncio
    async def test_revert_data_rpc_error(self, gateway, l2):
        l2.provider.trace_response = {"error": {"code": -32601, "message": "method not found"}}

        with pytest.raises(RuntimeError, match="method not found"):
            await gateway.fetch_revert_data(tx_hash(11))


def test_summarize_attribute_receipt():
    class Receipt:
        transactionHash = bytes(32)
        status = 1
        blockNumber = 5
        gasUsed = 10
        logs = []

    summary = summarize_receipt(Receipt(), Layer.L2, gas_limit=20)

    assert summary.tx_hash == "0x" + "00" * 32
    assert summary.gas_utilization == 0.5
    assert summary.to_address is None
