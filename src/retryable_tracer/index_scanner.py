"""
Background scanner populating the ticket index.

L1 block ranges are scanned for ticket creations and L2 ranges for
redemptions. The worker keeps per-layer cursors in a small JSON file.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from .config import IndexerConfig
from .event_decoder import ARB_RETRYABLE_TX_ADDRESS, EventDecoder
from .gateway import LedgerGateway
from .index_store import TicketIndexStore
from .models import Layer, LifecycleKind, WasmFailure


@dataclass(frozen=True, slots=True)
class ScanResult:
    """Outcome of scanning one block range."""

    layer: Layer
    start: int
    end: int
    logs_seen: int
    rows_inserted: int


@dataclass(slots=True)
class ScanState:
    """Last block scanned on each layer, persisted between runs."""

    last_l1: int | None = None
    last_l2: int | None = None

    @classmethod
    def load(cls, path: Path) -> "ScanState":
        if not path.exists():
            return cls()
        with path.open() as file:
            data: dict[str, Any] = json.load(file)
        return cls(last_l1=data.get("last_l1"), last_l2=data.get("last_l2"))

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with tmp_path.open("w") as file:
            json.dump(asdict(self), file)
        tmp_path.replace(path)


class IndexScanner:
    """
    Scans block ranges for ticket creations (L1) and settlements (L2).

    Every write is an idempotent insert, so scanning a range twice, or two
    overlapping ranges, leaves the index unchanged the second time.
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        store: TicketIndexStore,
        decoder: EventDecoder,
        chunk_size: int = 10,
        inbox_address: str | None = None
    ) -> None:
        """
        Initialize the scanner.

        Args:
            gateway: Ledger access
            store: Index to populate
            decoder: Log decoder
            chunk_size: Blocks per get_logs call
            inbox_address: Optional Inbox contract to restrict creation logs to
        """
        self.gateway = gateway
        self.store = store
        self.decoder = decoder
        self.chunk_size = chunk_size
        self.inbox_address = inbox_address
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def _chunks(self, start: int, end: int):
        for chunk_start in range(start, end + 1, self.chunk_size):
            yield chunk_start, min(end, chunk_start + self.chunk_size - 1)

    async def scan_range(self, start: int, end: int) -> ScanResult:
        """
        Index ticket creations in an L1 block range.

        Args:
            start: First block, inclusive
            end: Last block, inclusive

        Returns:
            ScanResult with the number of creation logs seen and tickets inserted
        """
        if start < 0 or end < start:
            raise ValueError(f"Invalid block range {start}-{end}")

        seen = inserted = 0
        for chunk_start, chunk_end in self._chunks(start, end):
            logs = await self.gateway.get_logs(
                Layer.L1, chunk_start, chunk_end,
                topics=[self.decoder.creation_topic],
                address=self.inbox_address,
            )
            for ticket in self.decoder.decode_ticket_creation(logs):
                seen += 1
                if await asyncio.to_thread(self.store.upsert_ticket, ticket):
                    inserted += 1

        self.logger.info(f"Indexed L1 blocks {start}-{end}: {seen} tickets seen, {inserted} new")
        return ScanResult(Layer.L1, start, end, seen, inserted)

    async def scan_l2_range(self, start: int, end: int) -> ScanResult:
        """
        Index settlements in an L2 block range.

        Redeemed events become settlements. The receipt of each newly settled
        transaction is checked and a revert is recorded as failure metadata.
        """
        if start < 0 or end < start:
            raise ValueError(f"Invalid block range {start}-{end}")

        seen = inserted = 0
        for chunk_start, chunk_end in self._chunks(start, end):
            logs = await self.gateway.get_logs(
                Layer.L2, chunk_start, chunk_end,
                topics=[self.decoder.lifecycle_topics],
                address=ARB_RETRYABLE_TX_ADDRESS,
            )
            for event in self.decoder.decode_lifecycle_events(logs):
                if event.kind is not LifecycleKind.REDEEMED:
                    continue
                seen += 1
                if not await asyncio.to_thread(
                    self.store.record_settlement, event.ticket_id, event.tx_hash, event.block_number
                ):
                    continue
                inserted += 1
                await self._check_settlement_receipt(event.ticket_id, event.tx_hash)

        self.logger.info(f"Indexed L2 blocks {start}-{end}: {seen} redeems seen, {inserted} new")
        return ScanResult(Layer.L2, start, end, seen, inserted)

    async def _check_settlement_receipt(self, ticket_id: int, tx_hash: str) -> None:
        try:
            receipt = await self.gateway.get_receipt(Layer.L2, tx_hash)
        except Exception as e:
            self.logger.debug(f"Receipt of settlement {tx_hash} unavailable: {e}")
            return
        if receipt is not None and receipt.reverted:
            await asyncio.to_thread(self.store.record_wasm_failure, WasmFailure(
                tx_hash=receipt.tx_hash,
                ticket_id=ticket_id,
                gas_used=receipt.gas_used,
            ))


class IndexerWorker:
    """
    Independently paced loop keeping the index close to the chain head.

    Each pass resumes from the persisted cursors minus a reorg overlap, scans
    at most one batch per layer and saves the new cursors. A failed pass is
    logged and retried after a fixed delay.
    """

    def __init__(self, scanner: IndexScanner, config: IndexerConfig) -> None:
        self.scanner = scanner
        self.config = config
        self.state_path = Path(config.state_path)
        self.state = ScanState.load(self.state_path)
        self.is_running = False
        self.passes = 0
        self.failures = 0
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def _next_range(self, last: int | None, head: int, batch: int) -> tuple[int, int] | None:
        if last is None:
            start = max(0, head - batch + 1)
        else:
            start = max(0, last - self.config.reorg_depth + 1)
        end = min(head, start + batch - 1)
        if end < start:
            return None
        return start, end

    async def run_once(self) -> list[ScanResult]:
        """Scan one batch on each layer and persist the cursors."""
        results = []
        gateway = self.scanner.gateway

        l1_head = await gateway.block_number(Layer.L1)
        if (l1_range := self._next_range(self.state.last_l1, l1_head, self.config.l1_batch)) is not None:
            results.append(await self.scanner.scan_range(*l1_range))
            self.state.last_l1 = l1_range[1]

        l2_head = await gateway.block_number(Layer.L2)
        if (l2_range := self._next_range(self.state.last_l2, l2_head, self.config.l2_batch)) is not None:
            results.append(await self.scanner.scan_l2_range(*l2_range))
            self.state.last_l2 = l2_range[1]

        self.state.save(self.state_path)
        self.passes += 1
        return results

    async def start(self) -> None:
        """Run passes until stopped."""
        if self.is_running:
            self.logger.warning("Indexer already running")
            return

        self.is_running = True
        self.logger.info(
            f"Starting indexer from L1={self.state.last_l1} L2={self.state.last_l2}, "
            f"every {self.config.loop_interval}s"
        )
        while self.is_running:
            try:
                await self.run_once()
                await asyncio.sleep(self.config.loop_interval)
            except asyncio.CancelledError:
                self.logger.info("Indexer cancelled")
                break
            except Exception as e:
                self.failures += 1
                self.logger.error(f"Indexer pass failed: {e}")
                await asyncio.sleep(self.config.retry_delay)

    async def stop(self) -> None:
        """Stop the loop after the current pass."""
        self.logger.info("Stopping indexer")
        self.is_running = False

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "last_l1": self.state.last_l1,
            "last_l2": self.state.last_l2,
            "passes": self.passes,
            "failures": self.failures,
        }
