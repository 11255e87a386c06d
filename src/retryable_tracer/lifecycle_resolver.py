#!/usr/bin/env python3
"""Lifecycle resolution for retryable tickets.

The state of a ticket is resolved by an ordered list of strategies: the
index store first, then a bounded live scan of recent L2 blocks, then a
classification by redeem deadlines. The first strategy that returns a
resolution wins.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from .event_decoder import ARB_RETRYABLE_TX_ADDRESS, EventDecoder
from .gateway import LedgerGateway
from .index_store import TicketIndexStore
from .models import (
    BranchError,
    Layer,
    LifecycleEvent,
    LifecycleKind,
    LifecycleResolution,
    LifecycleState,
    Settlement,
    Ticket,
)
from .utils.hex_utility import int_to_topic

logger = logging.getLogger(__name__)

AUTO_REDEEM_BLOCK_WINDOW = 50
AUTO_REDEEM_WINDOW_SECONDS = 3600
MANUAL_REDEEM_WINDOW_SECONDS = 7 * 86400
DEFAULT_LOOKBACK_BLOCKS = 500


def classify_redemption(creation_block: int | None, redeem_block: int) -> LifecycleState:
    """AUTO_REDEEMED if the redeem landed within the auto-redeem block window."""
    if creation_block is not None and 0 <= redeem_block - creation_block <= AUTO_REDEEM_BLOCK_WINDOW:
        return LifecycleState.AUTO_REDEEMED
    return LifecycleState.MANUALLY_REDEEMED


def redeem_deadlines(created_at: int | None) -> tuple[int | None, int | None]:
    """Unix times at which the auto-redeem window and the ticket lifetime end."""
    if created_at is None:
        return None, None
    return created_at + AUTO_REDEEM_WINDOW_SECONDS, created_at + MANUAL_REDEEM_WINDOW_SECONDS


@dataclass
class _Context:
    ticket_id: int
    ticket: Ticket | None
    created_at: int | None
    now: float
    events: list[LifecycleEvent] = field(default_factory=list)
    errors: list[BranchError] = field(default_factory=list)

    @property
    def creation_block(self) -> int | None:
        # The L2 TicketCreated block is the natural reference for redeem distance
        for event in self.events:
            if event.kind is LifecycleKind.CREATED:
                return event.block_number
        return self.ticket.creation_block if self.ticket else None

    @property
    def lifetime_extensions(self) -> int:
        return sum(1 for event in self.events if event.kind is LifecycleKind.LIFETIME_EXTENDED)


Strategy = Callable[[_Context], Awaitable[LifecycleResolution | None]]


class LifecycleResolver:
    """
    Resolves the lifecycle state of a ticket.
    """

    def __init__(
        self,
        store: TicketIndexStore,
        gateway: LedgerGateway,
        decoder: EventDecoder,
        lookback_blocks: int = DEFAULT_LOOKBACK_BLOCKS
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.decoder = decoder
        self.lookback_blocks = lookback_blocks
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.strategies: list[tuple[str, Strategy]] = [
            ("index", self._from_index),
            ("live_scan", self._from_live_scan),
            ("deadline", self._from_deadline),
        ]

    async def resolve(
        self,
        ticket_id: int,
        ticket: Ticket | None = None,
        created_at: int | None = None,
        now: float | None = None
    ) -> LifecycleResolution:
        """
        Resolve the lifecycle state of a ticket.

        Args:
            ticket_id: Ticket identifier
            ticket: The ticket, if already decoded; read from the index otherwise
            created_at: Unix time of the creation block, if known
            now: Current unix time, defaults to the wall clock

        Returns:
            LifecycleResolution from the first strategy that produced one
        """
        context = _Context(
            ticket_id=ticket_id,
            ticket=ticket or await asyncio.to_thread(self.store.get_ticket, ticket_id),
            created_at=created_at,
            now=time.time() if now is None else now,
        )

        for name, strategy in self.strategies:
            try:
                if (resolution := await strategy(context)) is not None:
                    self.logger.debug(
                        f"Ticket {ticket_id:#x} resolved as {resolution.state.value} by {name}"
                    )
                    return resolution
            except asyncio.TimeoutError:
                self.logger.warning(f"Lifecycle strategy {name} timed out")
                context.errors.append(BranchError(f"lifecycle.{name}", "Timed out"))
            except Exception as e:
                self.logger.warning(f"Lifecycle strategy {name} failed: {e}")
                context.errors.append(BranchError(f"lifecycle.{name}", str(e) or type(e).__name__))

        # The deadline strategy always answers; reaching here means it raised
        return self._resolution(context, LifecycleState.PENDING, "deadline")

    def _resolution(
        self,
        context: _Context,
        state: LifecycleState,
        source: str,
        settlement: Settlement | None = None
    ) -> LifecycleResolution:
        auto_deadline, manual_deadline = redeem_deadlines(context.created_at)
        return LifecycleResolution(
            ticket_id=context.ticket_id,
            state=state,
            source=source,
            events=tuple(sorted(context.events, key=lambda event: event.sort_key)),
            settlement=settlement,
            creation_block=context.creation_block,
            redeem_block=settlement.settling_block if settlement else None,
            auto_redeem_deadline=auto_deadline,
            manual_redeem_deadline=manual_deadline,
            lifetime_extensions=context.lifetime_extensions,
            errors=tuple(context.errors),
        )

    async def _from_index(self, context: _Context) -> LifecycleResolution | None:
        if (settlement := await asyncio.to_thread(self.store.lookup_settlement, context.ticket_id)) is None:
            return None
        state = classify_redemption(context.creation_block, settlement.settling_block)
        return self._resolution(context, state, "index", settlement)

    async def _from_live_scan(self, context: _Context) -> LifecycleResolution | None:
        latest = await self.gateway.block_number(Layer.L2)
        from_block = max(0, latest - self.lookback_blocks)
        logs = await self.gateway.get_logs(
            Layer.L2,
            from_block,
            latest,
            topics=[self.decoder.lifecycle_topics, int_to_topic(context.ticket_id)],
            address=ARB_RETRYABLE_TX_ADDRESS,
        )
        events = [
            event for event in self.decoder.decode_lifecycle_events(logs)
            if event.ticket_id == context.ticket_id
        ]
        context.events.extend(events)

        redeemed = next((event for event in events if event.kind is LifecycleKind.REDEEMED), None)
        if redeemed is None:
            return None

        recorded = await asyncio.to_thread(
            self.store.record_settlement, context.ticket_id, redeemed.tx_hash, redeemed.block_number
        )
        if recorded:
            self.logger.info(f"Indexed settlement of ticket {context.ticket_id:#x} from live scan")
        # Another writer may have won; report what the index holds
        settlement = await asyncio.to_thread(self.store.lookup_settlement, context.ticket_id) or Settlement(
            ticket_id=context.ticket_id,
            settling_tx_hash=redeemed.tx_hash,
            settling_block=redeemed.block_number,
        )
        state = classify_redemption(context.creation_block, settlement.settling_block)
        return self._resolution(context, state, "live_scan", settlement)

    async def _from_deadline(self, context: _Context) -> LifecycleResolution:
        _, manual_deadline = redeem_deadlines(context.created_at)
        if manual_deadline is not None and context.now > manual_deadline:
            state = LifecycleState.EXPIRED
        else:
            state = LifecycleState.PENDING
        return self._resolution(context, state, "deadline")
