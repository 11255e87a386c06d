#!/usr/bin/env python3
"""Backtrace from an L2 transaction to the L1 transaction that caused it.

The ticket id is read from the L2 transaction's precompile logs, then
looked up in the index. On a miss the base layer is scanned backwards from
the latest block in small windows, filtering on the ticket creation topic
with the id as indexed argument. The scan is bounded by a lookback
horizon: tickets created before it are not found.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from .event_decoder import DecodeStatus, EventDecoder
from .gateway import LedgerGateway
from .index_store import TicketIndexStore
from .models import Layer, ReceiptSummary
from .utils.hex_utility import int_to_topic

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10
DEFAULT_LOOKBACK_BLOCKS = 2000

RANGE_LIMIT_MARKERS = ("block range", "range limit", "too many blocks", "exceed")


def is_range_limit_error(error: Exception) -> bool:
    """Whether a provider rejected a get_logs call for its range size."""
    message = str(error).lower()
    return any(marker in message for marker in RANGE_LIMIT_MARKERS)


class BacktraceResolver:
    """
    Finds the parent L1 transaction of an L2 transaction.
    """

    def __init__(
        self,
        store: TicketIndexStore,
        gateway: LedgerGateway,
        decoder: EventDecoder,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        lookback_blocks: int = DEFAULT_LOOKBACK_BLOCKS,
        inbox_address: str | None = None
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.decoder = decoder
        self.chunk_size = chunk_size
        self.lookback_blocks = lookback_blocks
        self.inbox_address = inbox_address
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.strategies: list[tuple[str, Callable[[int], Awaitable[str | None]]]] = [
            ("index", self._from_index),
            ("reverse_scan", self._from_reverse_scan),
        ]

    def extract_ticket_id(self, l2_receipt: ReceiptSummary) -> int | None:
        outcome = self.decoder.extract_ticket_id(l2_receipt.logs)
        if outcome.status is DecodeStatus.RAW_MATCHED:
            self.logger.debug(f"Ticket id of {l2_receipt.tx_hash} recovered by raw topic match")
        return outcome.value if outcome.matched else None

    async def find_parent_l1(self, l2_receipt: ReceiptSummary) -> str | None:
        """
        Recover the L1 transaction that created the ticket executed by an L2 tx.

        Never raises: an unrecognised receipt, a miss, or a failed scan all
        return None.

        Args:
            l2_receipt: Receipt of the L2 transaction

        Returns:
            Lower-case L1 transaction hash, or None
        """
        if (ticket_id := self.extract_ticket_id(l2_receipt)) is None:
            self.logger.debug(f"No retryable lifecycle log in {l2_receipt.tx_hash}")
            return None

        for name, strategy in self.strategies:
            try:
                if (parent := await strategy(ticket_id)) is not None:
                    self.logger.info(f"Backtraced {l2_receipt.tx_hash} to {parent} via {name}")
                    return parent
            except Exception as e:
                self.logger.warning(f"Backtrace strategy {name} failed: {e}")
        return None

    async def _from_index(self, ticket_id: int) -> str | None:
        ticket = await asyncio.to_thread(self.store.get_ticket, ticket_id)
        return ticket.creating_tx_hash if ticket else None

    async def _from_reverse_scan(self, ticket_id: int) -> str | None:
        latest = await self.gateway.block_number(Layer.L1)
        floor = max(0, latest - self.lookback_blocks)
        topics = [self.decoder.creation_topic, int_to_topic(ticket_id)]

        current = latest
        while current >= floor:
            start = max(floor, current - self.chunk_size + 1)
            try:
                logs = await self.gateway.get_logs(
                    Layer.L1, start, current, topics=topics, address=self.inbox_address
                )
            except asyncio.TimeoutError:
                self.logger.debug(f"Chunk {start}-{current} timed out, skipping")
                logs = []
            except Exception as e:
                if not is_range_limit_error(e):
                    raise
                self.logger.debug(f"Chunk {start}-{current} rejected by provider: {e}")
                logs = []

            for log in logs:
                outcome = self.decoder.decode_creation_log(log)
                if outcome.matched and outcome.value.ticket_id == ticket_id:
                    await asyncio.to_thread(self.store.upsert_ticket, outcome.value)
                    return outcome.value.creating_tx_hash
                if log.get("transactionHash"):
                    # Filtered on the id already; accept an undecodable match
                    return log["transactionHash"]

            current = start - 1
        return None
