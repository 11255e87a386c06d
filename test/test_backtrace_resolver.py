#!/usr/bin/env python3
"""Tests for the L2 to L1 backtrace."""

import asyncio

import pytest

from retryable_tracer.backtrace_resolver import BacktraceResolver, is_range_limit_error
from retryable_tracer.gateway import LedgerGateway
from retryable_tracer.models import Layer, ReceiptSummary

from conftest import DESTINATION, creation_log, lifecycle_log, tx_hash


@pytest.fixture
def resolver(registry, store, decoder):
    return BacktraceResolver(
        store, LedgerGateway(registry, timeout=0.5), decoder, chunk_size=10, lookback_blocks=100
    )


def l2_receipt(logs: list) -> ReceiptSummary:
    return ReceiptSummary(tx_hash=tx_hash(900), layer=Layer.L2, status=0, block_number=89_999,
                          gas_used=100_000, logs=tuple(logs))


def test_range_limit_detection():
    assert is_range_limit_error(ValueError("query exceeds max block range 10"))
    assert is_range_limit_error(ValueError("Too many blocks requested"))
    assert not is_range_limit_error(ValueError("connection reset"))


class TestFindParent:

    @pytest.mark.asyncio
    async def test_no_lifecycle_log(self, resolver, l1):
        receipt = l2_receipt([{"address": DESTINATION, "topics": ["0x" + "00" * 32], "data": "0x"}])

        assert await resolver.find_parent_l1(receipt) is None
        assert l1.eth.get_logs_calls == []

    @pytest.mark.asyncio
    async def test_index_hit(self, resolver, store, decoder, l1):
        ticket = decoder.decode_ticket_creation([creation_log(decoder, 11, tx_hash(1), block=4000)])[0]
        store.upsert_ticket(ticket)

        parent = await resolver.find_parent_l1(
            l2_receipt([lifecycle_log(decoder, "Redeemed", 11, tx_hash(900), block=89_999)])
        )

        assert parent == tx_hash(1)
        assert l1.eth.get_logs_calls == []

    @pytest.mark.asyncio
    async def test_reverse_scan_finds_and_indexes(self, resolver, store, decoder, l1):
        l1.eth.logs += [
            creation_log(decoder, 12, tx_hash(2), block=4_950),
            creation_log(decoder, 13, tx_hash(3), block=4_990),
        ]

        parent = await resolver.find_parent_l1(
            l2_receipt([lifecycle_log(decoder, "Redeemed", 12, tx_hash(900), block=89_999)])
        )

        assert parent == tx_hash(2)
        assert store.get_ticket(12).creation_block == 4_950
        assert store.get_ticket(13) is None
        windows = [(call["fromBlock"], call["toBlock"]) for call in l1.eth.get_logs_calls]
        assert windows[0] == (4_991, 5_000)
        assert windows[-1] == (4_941, 4_950)

    @pytest.mark.asyncio
    async def test_range_rejection_skips_chunk(self, resolver, decoder, l1):
        l1.eth.logs.append(creation_log(decoder, 14, tx_hash(4), block=4_985))
        fake_get_logs = l1.eth.get_logs
        calls = 0

        async def flaky_get_logs(params):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ValueError("query exceeds block range limit")
            return await fake_get_logs(params)

        l1.eth.get_logs = flaky_get_logs

        parent = await resolver.find_parent_l1(
            l2_receipt([lifecycle_log(decoder, "Redeemed", 14, tx_hash(900), block=89_999)])
        )

        assert parent == tx_hash(4)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_timeouts_skip_chunk(self, resolver, decoder, l1):
        fake_get_logs = l1.eth.get_logs
        calls = 0

        async def slow_first_call(params):
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(2)
            return await fake_get_logs(params)

        l1.eth.get_logs = slow_first_call
        l1.eth.logs.append(creation_log(decoder, 15, tx_hash(5), block=4_980))

        parent = await resolver.find_parent_l1(
            l2_receipt([lifecycle_log(decoder, "Redeemed", 15, tx_hash(900), block=89_999)])
        )

        assert parent == tx_hash(5)

    @pytest.mark.asyncio
    async def test_provider_failure_returns_none(self, resolver, decoder, l1):
        l1.eth.logs_error = ConnectionError("connection reset")

        parent = await resolver.find_parent_l1(
            l2_receipt([lifecycle_log(decoder, "Redeemed", 16, tx_hash(900), block=89_999)])
        )

        assert parent is None
        assert len(l1.eth.get_logs_calls) == 1

    @pytest.mark.asyncio
    async def test_outside_horizon_is_not_found(self, resolver, decoder, l1):
        l1.eth.logs.append(creation_log(decoder, 17, tx_hash(6), block=4_800))

        parent = await resolver.find_parent_l1(
            l2_receipt([lifecycle_log(decoder, "Redeemed", 17, tx_hash(900), block=89_999)])
        )

        assert parent is None
        assert min(call["fromBlock"] for call in l1.eth.get_logs_calls) == 4_900
