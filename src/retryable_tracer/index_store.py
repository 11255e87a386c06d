#!/usr/bin/env python3
"""Ticket index store.

Append-only SQLite tables mapping tickets to the L1 transaction that created
them, to the L2 transaction that settled them, and L2 transactions to their
failure metadata. Rows are never updated once a field is set, so concurrent
writers from the scanner and from live queries cannot corrupt each other:
the first write of a field wins and later writes are ignored.
"""

import logging
import sqlite3
import threading
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .models import IndexRecord, Settlement, Ticket, WasmFailure, ticket_id_to_hex

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DEFAULT_CACHE_SIZE = 10_000


class TicketIndexStore:
    """
    Persistent ticket index backed by SQLite.

    Records are immutable once written, so positive lookups are served from
    a bounded LRU cache in front of the database.
    """

    def __init__(self, db_path: str | Path, cache_size: int = DEFAULT_CACHE_SIZE) -> None:
        """
        Open (and if needed create) the index database.

        Args:
            db_path: Path of the SQLite file
            cache_size: Maximum number of cached tickets and settlements
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self._cache_size = cache_size
        self._ticket_cache: OrderedDict[int, Ticket] = OrderedDict()
        self._settlement_cache: OrderedDict[int, Settlement] = OrderedDict()
        self._cache_lock = threading.Lock()
        self._init_db()

    @contextmanager
    def _get_conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_conn() as conn:
            conn.executescript('''
                CREATE TABLE IF NOT EXISTS tickets (
                    ticket_id TEXT PRIMARY KEY,
                    creating_tx_hash TEXT NOT NULL,
                    creator TEXT NOT NULL,
                    destination TEXT NOT NULL,
                    submission_value TEXT NOT NULL,
                    gas_ceiling TEXT NOT NULL,
                    max_fee TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    creation_block INTEGER NOT NULL,
                    log_index INTEGER NOT NULL DEFAULT 0,
                    indexed_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS ticket_settlement (
                    ticket_id TEXT PRIMARY KEY,
                    settling_tx_hash TEXT NOT NULL,
                    settling_block INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS wasm_failures (
                    tx_hash TEXT PRIMARY KEY,
                    ticket_id TEXT,
                    panic_code INTEGER,
                    panic_reason TEXT,
                    gas_used INTEGER
                );

                CREATE INDEX IF NOT EXISTS idx_tickets_creating_tx ON tickets(creating_tx_hash);
                CREATE INDEX IF NOT EXISTS idx_tickets_creation_block ON tickets(creation_block);
            ''')
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    # Cache helpers

    def _cache_put(self, cache: OrderedDict, key: int, value: Any) -> None:
        with self._cache_lock:
            cache[key] = value
            cache.move_to_end(key)
            while len(cache) > self._cache_size:
                cache.popitem(last=False)

    def _cache_get(self, cache: OrderedDict, key: int) -> Any:
        with self._cache_lock:
            value = cache.get(key)
            if value is not None:
                cache.move_to_end(key)
            return value

    # Writes

    def upsert_ticket(self, ticket: Ticket) -> bool:
        """
        Insert a ticket if its id is not indexed yet.

        Returns:
            True if a row was inserted, False if the ticket was already known
        """
        with self._write_lock, self._get_conn() as conn:
            cursor = conn.execute(
                '''
                INSERT OR IGNORE INTO tickets (
                    ticket_id, creating_tx_hash, creator, destination,
                    submission_value, gas_ceiling, max_fee, payload,
                    creation_block, log_index
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    ticket.ticket_id_hex,
                    ticket.creating_tx_hash.lower(),
                    ticket.creator,
                    ticket.destination,
                    str(ticket.submission_value),
                    str(ticket.gas_ceiling),
                    str(ticket.max_fee_per_gas),
                    ticket.payload,
                    ticket.creation_block,
                    ticket.log_index,
                )
            )
            inserted = cursor.rowcount == 1

        if inserted:
            logger.debug(f"Indexed {ticket}")
        return inserted

    def record_settlement(self, ticket_id: int, settling_tx_hash: str, settling_block: int) -> bool:
        """
        Record the L2 transaction that settled a ticket.

        Only the first write for a ticket is kept.

        Returns:
            True if this call stored the settlement
        """
        with self._write_lock, self._get_conn() as conn:
            cursor = conn.execute(
                '''
                INSERT OR IGNORE INTO ticket_settlement (ticket_id, settling_tx_hash, settling_block)
                VALUES (?, ?, ?)
                ''',
                (ticket_id_to_hex(ticket_id), settling_tx_hash.lower(), settling_block)
            )
            inserted = cursor.rowcount == 1

        if inserted:
            logger.debug(f"Recorded settlement of {ticket_id_to_hex(ticket_id)[:12]}... in {settling_tx_hash}")
        return inserted

    def record_wasm_failure(self, failure: WasmFailure) -> bool:
        """
        Record failure metadata for a reverted L2 transaction.

        Missing fields of an existing row are filled in; fields that are
        already set are never overwritten.

        Returns:
            True if a new row was inserted
        """
        ticket_id = ticket_id_to_hex(failure.ticket_id) if failure.ticket_id is not None else None
        with self._write_lock, self._get_conn() as conn:
            cursor = conn.execute(
                '''
                INSERT OR IGNORE INTO wasm_failures (tx_hash, ticket_id, panic_code, panic_reason, gas_used)
                VALUES (?, ?, ?, ?, ?)
                ''',
                (failure.tx_hash.lower(), ticket_id, failure.panic_code, failure.panic_reason, failure.gas_used)
            )
            inserted = cursor.rowcount == 1
            if not inserted:
                conn.execute(
                    '''
                    UPDATE wasm_failures SET
                        ticket_id = COALESCE(ticket_id, ?),
                        panic_code = COALESCE(panic_code, ?),
                        panic_reason = COALESCE(panic_reason, ?),
                        gas_used = COALESCE(gas_used, ?)
                    WHERE tx_hash = ?
                    ''',
                    (ticket_id, failure.panic_code, failure.panic_reason, failure.gas_used, failure.tx_hash.lower())
                )
        return inserted

    # Reads

    @staticmethod
    def _row_to_ticket(row: sqlite3.Row) -> Ticket:
        return Ticket(
            ticket_id=int(row["ticket_id"], 16),
            creating_tx_hash=row["creating_tx_hash"],
            creator=row["creator"],
            destination=row["destination"],
            gas_ceiling=int(row["gas_ceiling"]),
            max_fee_per_gas=int(row["max_fee"]),
            submission_value=int(row["submission_value"]),
            payload=row["payload"],
            creation_block=row["creation_block"],
            log_index=row["log_index"],
        )

    def get_ticket(self, ticket_id: int) -> Ticket | None:
        if (cached := self._cache_get(self._ticket_cache, ticket_id)) is not None:
            return cached
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM tickets WHERE ticket_id = ?", (ticket_id_to_hex(ticket_id),)
            ).fetchone()
        if row is None:
            return None
        ticket = self._row_to_ticket(row)
        self._cache_put(self._ticket_cache, ticket_id, ticket)
        return ticket

    def lookup_by_l1_tx(self, tx_hash: str) -> list[Ticket]:
        """All tickets created by an L1 transaction, in log order."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM tickets WHERE creating_tx_hash = ? ORDER BY log_index",
                (tx_hash.lower(),)
            ).fetchall()
        return [self._row_to_ticket(row) for row in rows]

    def lookup_settlement(self, ticket_id: int) -> Settlement | None:
        if (cached := self._cache_get(self._settlement_cache, ticket_id)) is not None:
            return cached
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT settling_tx_hash, settling_block FROM ticket_settlement WHERE ticket_id = ?",
                (ticket_id_to_hex(ticket_id),)
            ).fetchone()
        if row is None:
            return None
        settlement = Settlement(
            ticket_id=ticket_id,
            settling_tx_hash=row["settling_tx_hash"],
            settling_block=row["settling_block"],
        )
        self._cache_put(self._settlement_cache, ticket_id, settlement)
        return settlement

    def get_wasm_failure(self, tx_hash: str) -> WasmFailure | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM wasm_failures WHERE tx_hash = ?", (tx_hash.lower(),)
            ).fetchone()
        if row is None:
            return None
        return WasmFailure(
            tx_hash=row["tx_hash"],
            ticket_id=int(row["ticket_id"], 16) if row["ticket_id"] else None,
            panic_code=row["panic_code"],
            panic_reason=row["panic_reason"],
            gas_used=row["gas_used"],
        )

    def get_record(self, ticket_id: int) -> IndexRecord | None:
        """Ticket with its settlement and the failure of the settling tx, if any."""
        if (ticket := self.get_ticket(ticket_id)) is None:
            return None
        settlement = self.lookup_settlement(ticket_id)
        wasm_failure = self.get_wasm_failure(settlement.settling_tx_hash) if settlement else None
        return IndexRecord(ticket=ticket, settlement=settlement, wasm_failure=wasm_failure)

    def list_recent(self, limit: int = 20) -> list[Ticket]:
        """Most recently created tickets."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM tickets ORDER BY creation_block DESC, log_index DESC LIMIT ?",
                (limit,)
            ).fetchall()
        return [self._row_to_ticket(row) for row in rows]

    def stats(self) -> dict[str, Any]:
        """Row counts and the highest indexed creation block."""
        with self._get_conn() as conn:
            tickets, last_block = conn.execute(
                "SELECT COUNT(*), MAX(creation_block) FROM tickets"
            ).fetchone()
            settlements = conn.execute("SELECT COUNT(*) FROM ticket_settlement").fetchone()[0]
            failures = conn.execute("SELECT COUNT(*) FROM wasm_failures").fetchone()[0]
        return {
            "tickets": tickets,
            "settlements": settlements,
            "wasm_failures": failures,
            "last_block": last_block,
        }
