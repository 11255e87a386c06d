#!/usr/bin/env python3
"""Retryable ticket tracer.

Orchestrates a single trace request: locate the hash on both ledgers,
recover the ticket and its lifecycle, classify the failure and explain it.
Every network-bound branch is timeout-bounded and isolated; a branch that
fails or times out is reported in the result's errors and the trace carries
on with what it has.
"""

import asyncio
import dataclasses
import logging
import time
from typing import Any, Awaitable, Callable

from .backtrace_resolver import BacktraceResolver
from .causality_explainer import build_causal_graph, explain
from .config import TracerConfig
from .event_decoder import EventDecoder
from .failure_classifier import ClassificationInput, FailureClassifier, is_wasm_execution
from .gateway import LedgerGateway
from .index_store import TicketIndexStore
from .lifecycle_resolver import LifecycleResolver
from .models import (
    BranchError,
    Layer,
    LifecycleResolution,
    ReceiptSummary,
    RevertData,
    Ticket,
    TraceResult,
    WasmFailure,
)
from .timeline import build_timeline, summarize_timeline
from .utils.hex_utility import is_tx_hash
from .utils.provider_registry import ProviderRegistry

logger = logging.getLogger(__name__)


class InvalidTxHashError(ValueError):
    """Raised for input that is not a 32-byte hex transaction hash."""


class _Trace:
    """Mutable state of one trace request."""

    def __init__(self, tx_hash: str, budget: float) -> None:
        self.tx_hash = tx_hash
        self.started = time.perf_counter()
        self.deadline = self.started + budget
        self.errors: list[BranchError] = []
        self.timings: dict[str, int] = {}

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.perf_counter())


class RetryableTracer:
    """
    Traces a transaction hash across L1 and L2.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: TicketIndexStore,
        config: TracerConfig
    ) -> None:
        """
        Initialize the tracer and its components.

        Args:
            registry: Providers for both ledgers
            store: Ticket index
            config: Tracer configuration
        """
        self.config = config
        self.store = store
        self.decoder = EventDecoder()
        self.gateway = LedgerGateway(registry, timeout=config.query.rpc_timeout)
        self.lifecycle_resolver = LifecycleResolver(
            store, self.gateway, self.decoder,
            lookback_blocks=config.query.lifecycle_lookback_blocks,
        )
        self.backtrace_resolver = BacktraceResolver(
            store, self.gateway, self.decoder,
            chunk_size=config.query.backtrace_chunk_size,
            lookback_blocks=config.query.backtrace_lookback_blocks,
            inbox_address=config.inbox_address,
        )
        self.classifier = FailureClassifier(self.decoder)
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def _branch(self, trace: _Trace, name: str, awaitable: Awaitable[Any]) -> Any:
        """Run one branch within the remaining budget, recording its failure."""
        started = time.perf_counter()
        result = None
        try:
            result = await asyncio.wait_for(awaitable, trace.remaining())
        except asyncio.TimeoutError:
            self.logger.warning(f"Branch {name} of {trace.tx_hash} timed out")
            trace.errors.append(BranchError(name, "Timed out"))
        except Exception as e:
            self.logger.warning(f"Branch {name} of {trace.tx_hash} failed: {e}")
            trace.errors.append(BranchError(name, str(e) or type(e).__name__))
        finally:
            trace.timings[name] = int((time.perf_counter() - started) * 1000)
        return result

    async def _store_call(self, trace: _Trace, name: str, func: Callable[..., Any], *args: Any) -> Any:
        # SQLite blocks while another writer holds the database
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), trace.remaining())
        except asyncio.TimeoutError:
            self.logger.warning(f"Index store {name} timed out")
            trace.errors.append(BranchError(f"index.{name}", "Timed out"))
            return None
        except Exception as e:
            self.logger.warning(f"Index store {name} failed: {e}")
            trace.errors.append(BranchError(f"index.{name}", str(e) or type(e).__name__))
            return None

    async def trace(self, tx_hash: str) -> TraceResult:
        """
        Trace a transaction hash from either layer.

        Args:
            tx_hash: 0x-prefixed 32-byte transaction hash

        Returns:
            TraceResult; unavailable data shows up as UNKNOWN and in errors

        Raises:
            InvalidTxHashError: If tx_hash is not a 32-byte hex string
        """
        if not is_tx_hash(tx_hash):
            raise InvalidTxHashError(f"Invalid transaction hash: {tx_hash!r}")
        tx_hash = tx_hash.lower()

        trace = _Trace(tx_hash, self.config.query.request_budget)
        self.logger.info(f"Tracing {tx_hash}")

        located = await self._branch(trace, "locate", self.gateway.locate(tx_hash))
        if located is not None:
            trace.errors.extend(located.errors)
            found_on = located.on_layer
            l1_receipt, l2_receipt = located.l1_receipt, located.l2_receipt
        else:
            found_on, l1_receipt, l2_receipt = Layer.UNKNOWN, None, None

        # Tickets come from the L1 receipt, or from the parent of an L2 tx
        parent_l1_hash = None
        l2_ticket_id = None
        if l2_receipt is not None:
            l2_ticket_id = self.backtrace_resolver.extract_ticket_id(l2_receipt)

        if l1_receipt is None and l2_ticket_id is not None:
            parent_l1_hash = await self._branch(
                trace, "backtrace", self.backtrace_resolver.find_parent_l1(l2_receipt)
            )
            if parent_l1_hash:
                l1_receipt = await self._branch(
                    trace, "parent_receipt", self.gateway.get_receipt(Layer.L1, parent_l1_hash)
                )

        tickets = await self._tickets_for(trace, l1_receipt)
        ticket = self._primary_ticket(tickets, l2_ticket_id)
        ticket_id = ticket.ticket_id if ticket else l2_ticket_id

        # Fan out the independent lookups
        lifecycle, base_fee, revert, l1_timestamp = await asyncio.gather(
            self._branch(trace, "lifecycle", self._resolve_lifecycle(ticket_id, ticket, l1_receipt))
            if ticket_id is not None else self._none(),
            self._branch(trace, "base_fee", self.gateway.average_base_fee(self.config.query.base_fee_sample_blocks))
            if ticket is not None else self._none(),
            self._branch(trace, "revert_trace", self.gateway.fetch_revert_data(l2_receipt.tx_hash))
            if l2_receipt is not None and l2_receipt.reverted else self._none(),
            self._branch(trace, "l1_block", self.gateway.block_timestamp(Layer.L1, l1_receipt.block_number))
            if l1_receipt is not None else self._none(),
        )
        if l1_receipt is not None and l1_timestamp is not None:
            l1_receipt = dataclasses.replace(l1_receipt, block_timestamp=l1_timestamp)

        # An L1 hash only reaches its L2 execution through the settlement
        execution_receipt = l2_receipt
        if execution_receipt is None and lifecycle is not None and lifecycle.settlement is not None:
            execution_receipt = await self._branch(
                trace, "settlement_receipt",
                self.gateway.get_receipt(Layer.L2, lifecycle.settlement.settling_tx_hash)
            )
            if execution_receipt is not None and execution_receipt.reverted:
                revert = await self._branch(
                    trace, "settlement_revert_trace", self.gateway.fetch_revert_data(execution_receipt.tx_hash)
                )

        classification = self.classifier.classify(ClassificationInput(
            l1_receipt=l1_receipt,
            l2_receipt=execution_receipt,
            ticket=ticket,
            lifecycle=lifecycle,
            base_fee_average=base_fee,
            revert=revert,
        ))

        wasm_failure = await self._record_wasm_failure(trace, execution_receipt, ticket_id, revert)

        timeline = build_timeline(l1_receipt, execution_receipt, tickets, lifecycle, classification)
        response_time_ms = int((time.perf_counter() - trace.started) * 1000)
        self.logger.info(
            f"Traced {tx_hash}: {classification.location.value}/{classification.reason.value} "
            f"in {response_time_ms}ms ({len(trace.errors)} errors)"
        )
        return TraceResult(
            tx_hash=tx_hash,
            found_on=found_on,
            classification=classification,
            explanation=explain(classification, ticket, l1_receipt, execution_receipt),
            timeline=tuple(timeline),
            timeline_summary=summarize_timeline(timeline),
            causal_graph=build_causal_graph(classification, ticket, l1_receipt, execution_receipt),
            tickets=tuple(tickets),
            lifecycle=lifecycle,
            parent_l1_tx_hash=parent_l1_hash,
            wasm_failure=wasm_failure,
            l1_receipt=l1_receipt,
            l2_receipt=execution_receipt,
            errors=tuple(trace.errors),
            timings=trace.timings,
            response_time_ms=response_time_ms,
        )

    @staticmethod
    async def _none() -> None:
        return None

    async def _tickets_for(self, trace: _Trace, l1_receipt: ReceiptSummary | None) -> list[Ticket]:
        if l1_receipt is None:
            return []
        tickets = self.decoder.decode_ticket_creation(
            l1_receipt.logs, tx_hash=l1_receipt.tx_hash, block_number=l1_receipt.block_number
        )
        if not tickets:
            return await self._store_call(trace, "lookup_by_l1_tx", self.store.lookup_by_l1_tx, l1_receipt.tx_hash) or []
        for ticket in tickets:
            await self._store_call(trace, "upsert_ticket", self.store.upsert_ticket, ticket)
        return tickets

    @staticmethod
    def _primary_ticket(tickets: list[Ticket], ticket_id: int | None) -> Ticket | None:
        if ticket_id is not None:
            for ticket in tickets:
                if ticket.ticket_id == ticket_id:
                    return ticket
        return tickets[0] if tickets else None

    async def _resolve_lifecycle(
        self,
        ticket_id: int,
        ticket: Ticket | None,
        l1_receipt: ReceiptSummary | None
    ) -> LifecycleResolution:
        created_at = None
        creation_block = ticket.creation_block if ticket else (l1_receipt.block_number if l1_receipt else None)
        if creation_block is not None:
            try:
                created_at = await self.gateway.block_timestamp(Layer.L1, creation_block)
            except Exception as e:
                self.logger.debug(f"Creation time of ticket {ticket_id:#x} unavailable: {e}")
        return await self.lifecycle_resolver.resolve(ticket_id, ticket=ticket, created_at=created_at)

    async def _record_wasm_failure(
        self,
        trace: _Trace,
        receipt: ReceiptSummary | None,
        ticket_id: int | None,
        revert: RevertData | None
    ) -> WasmFailure | None:
        if receipt is None or not receipt.reverted:
            return None
        panic = self.decoder.decode_wasm_failure(revert.output) if revert and revert.output else None
        if panic is None and not is_wasm_execution(receipt):
            return None

        failure = WasmFailure(
            tx_hash=receipt.tx_hash,
            ticket_id=ticket_id,
            panic_code=panic.code if panic else None,
            panic_reason=panic.reason if panic else None,
            gas_used=receipt.gas_used,
        )
        await self._store_call(trace, "record_wasm_failure", self.store.record_wasm_failure, failure)
        return await self._store_call(trace, "get_wasm_failure", self.store.get_wasm_failure, receipt.tx_hash) or failure
