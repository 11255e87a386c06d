#!/usr/bin/env python3
"""Tests for the ABI, hex and provider helpers."""

import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest
from hexbytes import HexBytes

from retryable_tracer.models import Layer
from retryable_tracer.utils.abi_utility import event_signature, find_event_abi, get_contract_abi
from retryable_tracer.utils.hex_utility import (
    is_tx_hash,
    log_for_abi_decode,
    normalize_log,
    parse_topic_as_int,
    to_bytes,
    to_hex,
    topic_to_address,
)
from retryable_tracer.utils.provider_registry import ProviderRegistry


class TestAbiUtility(unittest.TestCase):

    def test_bundled_abis(self):
        inbox = get_contract_abi("Inbox")
        retryable = get_contract_abi("ArbRetryableTx")

        self.assertEqual(
            event_signature(find_event_abi(inbox, "RetryableTicketCreated")),
            "RetryableTicketCreated(uint256,address,address,uint256,address,address,uint256,uint256,bytes)",
        )
        self.assertEqual(event_signature(find_event_abi(retryable, "Redeemed")), "Redeemed(bytes32)")

    def test_missing_contract(self):
        with self.assertRaises(FileNotFoundError):
            get_contract_abi("NoSuchContract")

    def test_missing_event(self):
        with self.assertRaises(ValueError):
            find_event_abi(get_contract_abi("Inbox"), "Transfer")


class TestHexUtility(unittest.TestCase):

    def test_is_tx_hash(self):
        self.assertTrue(is_tx_hash("0x" + "aB" * 32))
        self.assertFalse(is_tx_hash("0x" + "a" * 63))
        self.assertFalse(is_tx_hash(b"\x00" * 32))

    def test_conversions(self):
        self.assertEqual(to_hex(HexBytes("0xABCD")), "0xabcd")
        self.assertEqual(to_hex("ABCD"), "0xabcd")
        self.assertEqual(to_bytes("0x"), b"")
        self.assertEqual(to_bytes(None), b"")
        self.assertEqual(parse_topic_as_int("0x" + "00" * 31 + "2a"), 42)
        self.assertEqual(parse_topic_as_int(b"\x01\x00"), 256)
        with self.assertRaises(TypeError):
            to_hex(42)

    def test_topic_to_address(self):
        topic = "0x" + "00" * 12 + "ab" * 20
        self.assertEqual(topic_to_address(topic).lower(), "0x" + "ab" * 20)

    def test_normalize_attribute_log(self):
        log = Mock(
            address="0x000000000000000000000000000000000000006E",
            topics=[HexBytes("0x01")],
            data=HexBytes("0x"),
            blockNumber=7,
            transactionHash=HexBytes(b"\x11" * 32),
            transactionIndex=0,
            blockHash=None,
            logIndex=3,
        )
        # Mock answers every attribute; plain objects must not look like dicts
        del log.get

        entry = normalize_log(log)

        self.assertEqual(entry["address"], "0x000000000000000000000000000000000000006e")
        self.assertEqual(entry["topics"], ["0x01"])
        self.assertEqual(entry["data"], "0x")
        self.assertEqual(entry["blockHash"], None)
        self.assertEqual(entry["logIndex"], 3)

    def test_abi_log_requires_metadata(self):
        entry = normalize_log({"address": "0x" + "00" * 20, "topics": [], "data": "0x"})
        self.assertIsNone(log_for_abi_decode(entry))


class TestProviderRegistry(unittest.TestCase):

    @patch("retryable_tracer.utils.provider_registry.AsyncWeb3")
    def test_from_urls(self, mock_web3):
        mock_web3.AsyncHTTPProvider = Mock(side_effect=lambda url, **kwargs: f"provider:{url}")
        mock_web3.side_effect = lambda provider: MagicMock(name=provider)

        registry = ProviderRegistry.from_urls("https://l1.example", "https://l2.example", request_timeout=3)

        mock_web3.AsyncHTTPProvider.assert_any_call("https://l1.example", request_kwargs={"timeout": 3})
        self.assertEqual(mock_web3.call_count, 2)
        self.assertIsNone(registry.debug)
        self.assertIs(registry.tracer, registry.l2)

    def test_get(self):
        registry = ProviderRegistry(l1="l1", l2="l2", debug="debug")

        self.assertEqual(registry.get(Layer.L1), "l1")
        self.assertEqual(registry.get(Layer.L2), "l2")
        self.assertEqual(registry.tracer, "debug")
        with self.assertRaises(ValueError):
            registry.get(Layer.BOTH)


@pytest.mark.asyncio
async def test_close_disconnects_providers():
    l1, l2 = MagicMock(), MagicMock()
    l1.provider.disconnect = AsyncMock()
    l2.provider.disconnect = AsyncMock(side_effect=RuntimeError("already closed"))

    await ProviderRegistry(l1=l1, l2=l2).close()

    l1.provider.disconnect.assert_awaited_once()
    l2.provider.disconnect.assert_awaited_once()


def test_utils_package_is_installed():
    tomllib = pytest.importorskip("tomllib")
    setuptools = pytest.importorskip("setuptools")
    root = Path(__file__).resolve().parent.parent

    find = tomllib.loads((root / "pyproject.toml").read_text())["tool"]["setuptools"]["packages"]["find"]
    packages = setuptools.find_namespace_packages(where=str(root / find["where"][0]))

    assert find["namespaces"] is True
    assert "retryable_tracer.utils" in packages
