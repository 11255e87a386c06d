"""
Helpers for normalising hashes, topics and logs returned by RPC providers.

Providers hand back the same values as bytes, HexBytes or hex strings
depending on the transport and on whether the log came from a receipt,
eth_getLogs or a trace.
"""

import re
from typing import Any

from hexbytes import HexBytes
from web3 import Web3

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


def is_tx_hash(value: Any) -> bool:
    """Check whether a value is a 0x-prefixed 32-byte hex string."""
    return isinstance(value, str) and bool(TX_HASH_PATTERN.match(value))


def to_hex(value: Any) -> str:
    """
    Render bytes or a hex string as a lower-case 0x-prefixed hex string.

    :param value: bytes, HexBytes or hex string
    :return: Lower-case hex string
    """
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, str):
        hex_str = value[2:] if value.startswith(("0x", "0X")) else value
        return "0x" + hex_str.lower()
    raise TypeError(f"Cannot convert {type(value).__name__} to hex")


def to_bytes(value: Any) -> bytes:
    """Convert bytes or a hex string to bytes. Empty values give b''."""
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        hex_str = value[2:] if value.startswith(("0x", "0X")) else value
        return bytes.fromhex(hex_str) if hex_str else b""
    raise TypeError(f"Cannot convert {type(value).__name__} to bytes")


def parse_topic_as_int(topic: Any) -> int:
    """
    Parse an event topic (bytes or hex string) as an integer.

    :param topic: The topic to parse (bytes, str, or other)
    :return: Integer value of the topic
    """
    if isinstance(topic, (bytes, bytearray)):
        return int.from_bytes(topic, byteorder="big")
    elif isinstance(topic, str):
        hex_str = topic[2:] if topic.startswith("0x") else topic
        return int(hex_str, 16) if hex_str else 0
    else:
        return 0


def int_to_topic(value: int) -> str:
    """Encode an integer as a 32-byte topic hex string."""
    return "0x" + value.to_bytes(32, "big").hex()


def topic_to_address(topic: Any) -> str:
    """Extract the checksummed address held in the low 20 bytes of a topic."""
    raw = to_bytes(topic)
    return Web3.to_checksum_address(raw[-20:])


def _field(log: Any, name: str) -> Any:
    if isinstance(log, dict) or hasattr(log, "get"):
        return log.get(name)
    return getattr(log, name, None)


def normalize_log(log: Any) -> dict[str, Any]:
    """
    Convert a log entry into a plain dictionary with hex-string fields.

    Accepts dicts, web3 AttributeDicts and attribute-style objects. Missing
    metadata (block number, hash, index) is kept as None.

    :param log: Log entry in any provider format
    :return: Dictionary with address, topics, data and metadata
    """
    address = _field(log, "address")
    topics = _field(log, "topics") or []
    tx_hash = _field(log, "transactionHash")
    block_hash = _field(log, "blockHash")

    return {
        "address": to_hex(address) if address is not None else None,
        "topics": [to_hex(topic) for topic in topics],
        "data": to_hex(_field(log, "data") or b""),
        "blockNumber": _field(log, "blockNumber"),
        "transactionHash": to_hex(tx_hash) if tx_hash is not None else None,
        "transactionIndex": _field(log, "transactionIndex"),
        "blockHash": to_hex(block_hash) if block_hash is not None else None,
        "logIndex": _field(log, "logIndex"),
    }


def log_for_abi_decode(log: dict[str, Any]) -> dict[str, Any] | None:
    """
    Build the log shape web3's event processing expects.

    Returns None when the entry lacks the metadata a structured decode needs.
    """
    required = ("blockNumber", "transactionHash", "logIndex", "address")
    if any(log.get(name) is None for name in required):
        return None
    return {
        "address": Web3.to_checksum_address(log["address"]),
        "topics": [HexBytes(topic) for topic in log["topics"]],
        "data": HexBytes(log["data"]),
        "blockNumber": log["blockNumber"],
        "transactionHash": HexBytes(log["transactionHash"]),
        "transactionIndex": log.get("transactionIndex") or 0,
        "blockHash": HexBytes(log["blockHash"]) if log.get("blockHash") else HexBytes(b"\x00" * 32),
        "logIndex": log["logIndex"],
    }
