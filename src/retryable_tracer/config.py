#!/usr/bin/env python3
"""Configuration management for the retryable ticket tracer.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables, with network presets
supplying the public RPC endpoints.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import ClassVar
from urllib.parse import urlparse

from web3 import Web3

# Get logger for this module
logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class NetworkPreset:
    """Public endpoints for a known L1/L2 pair."""

    name: str
    l1_rpc_url: str
    l2_rpc_url: str


NETWORK_PRESETS: dict[str, NetworkPreset] = {
    "arbitrum": NetworkPreset(
        name="Arbitrum One",
        l1_rpc_url="https://eth.llamarpc.com",
        l2_rpc_url="https://arb1.arbitrum.io/rpc",
    ),
    "nova": NetworkPreset(
        name="Arbitrum Nova",
        l1_rpc_url="https://eth.llamarpc.com",
        l2_rpc_url="https://nova.arbitrum.io/rpc",
    ),
    "sepolia": NetworkPreset(
        name="Arbitrum Sepolia",
        l1_rpc_url="https://eth-sepolia.public.blastapi.io",
        l2_rpc_url="https://sepolia-rollup.arbitrum.io/rpc",
    ),
}


def _validate_rpc_url(url: str, label: str) -> None:
    if not url:
        raise ValueError(f"{label} RPC URL is required")
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https', 'ws', 'wss'):
        raise ValueError(
            f"Invalid {label} RPC URL scheme: {parsed.scheme}. "
            "Expected http, https, ws, or wss"
        )


@dataclass(frozen=True, slots=True)
class QueryConfig:
    """Limits applied to a single trace request."""
    rpc_timeout: float = 5.0  # seconds per ledger call
    request_budget: float = 20.0  # seconds for the whole fan-out
    lifecycle_lookback_blocks: int = 500
    backtrace_lookback_blocks: int = 2000
    backtrace_chunk_size: int = 10
    base_fee_sample_blocks: int = 10

    def __post_init__(self) -> None:
        """Validate query configuration."""
        if self.rpc_timeout <= 0:
            raise ValueError(f"RPC timeout must be positive, got {self.rpc_timeout}")
        if self.request_budget < self.rpc_timeout:
            raise ValueError(
                f"Request budget ({self.request_budget}s) must not be shorter "
                f"than the RPC timeout ({self.rpc_timeout}s)"
            )
        if self.lifecycle_lookback_blocks <= 0:
            raise ValueError(
                f"Lifecycle lookback blocks must be positive, got {self.lifecycle_lookback_blocks}"
            )
        if self.backtrace_lookback_blocks <= 0:
            raise ValueError(
                f"Backtrace lookback blocks must be positive, got {self.backtrace_lookback_blocks}"
            )
        if not 1 <= self.backtrace_chunk_size <= 10_000:
            raise ValueError(
                f"Backtrace chunk size must be between 1 and 10000, got {self.backtrace_chunk_size}"
            )
        if not 1 <= self.base_fee_sample_blocks <= 100:
            raise ValueError(
                f"Base fee sample must be between 1 and 100 blocks, got {self.base_fee_sample_blocks}"
            )


@dataclass(frozen=True, slots=True)
class IndexerConfig:
    """Configuration for the ticket index and its background scanner."""
    db_path: str = "data/tickets.db"
    state_path: str = "data/indexer_state.json"
    loop_interval: float = 15.0  # seconds between passes
    retry_delay: float = 5.0  # seconds before restarting a failed pass
    reorg_depth: int = 12
    l1_batch: int = 20
    l2_batch: int = 20
    log_chunk_size: int = 10

    def __post_init__(self) -> None:
        """Validate indexer configuration."""
        if not self.db_path:
            raise ValueError("Index database path is required (INDEX_DB_PATH)")
        if self.loop_interval <= 0:
            raise ValueError(f"Loop interval must be positive, got {self.loop_interval}")
        if self.retry_delay <= 0:
            raise ValueError(f"Retry delay must be positive, got {self.retry_delay}")
        if self.reorg_depth < 0:
            raise ValueError(f"Reorg depth must be non-negative, got {self.reorg_depth}")
        if self.l1_batch <= 0 or self.l2_batch <= 0:
            raise ValueError(
                f"Batch sizes must be positive, got L1={self.l1_batch} L2={self.l2_batch}"
            )
        if min(self.l1_batch, self.l2_batch) <= self.reorg_depth:
            raise ValueError(
                f"Batch sizes must exceed the reorg depth ({self.reorg_depth}) for the scan to advance"
            )
        if self.log_chunk_size <= 0:
            raise ValueError(f"Log chunk size must be positive, got {self.log_chunk_size}")


@dataclass(frozen=True, slots=True)
class TracerConfig:
    """Main configuration for the tracer.

    Attributes:
        network: Network preset name, or 'custom'
        l1_rpc_url: Base layer RPC endpoint
        l2_rpc_url: Execution layer RPC endpoint
        debug_rpc_url: Optional endpoint supporting debug_traceTransaction
        inbox_address: Optional Inbox contract to restrict creation log scans
        query: Per-request limits
        indexer: Index store and scanner settings
    """

    network: str
    l1_rpc_url: str
    l2_rpc_url: str
    debug_rpc_url: str | None = None
    inbox_address: str | None = None
    query: QueryConfig = field(default_factory=QueryConfig)
    indexer: IndexerConfig = field(default_factory=IndexerConfig)

    SUPPORTED_NETWORKS: ClassVar[set[str]] = {*NETWORK_PRESETS, 'custom'}

    def __post_init__(self) -> None:
        """Validate tracer configuration."""
        if self.network not in self.SUPPORTED_NETWORKS:
            raise ValueError(
                f"Unsupported network: {self.network}. "
                f"Supported networks: {', '.join(sorted(self.SUPPORTED_NETWORKS))}"
            )

        _validate_rpc_url(self.l1_rpc_url, "L1")
        _validate_rpc_url(self.l2_rpc_url, "L2")
        if self.debug_rpc_url:
            _validate_rpc_url(self.debug_rpc_url, "Debug")

        if self.inbox_address:
            if not Web3.is_address(self.inbox_address):
                raise ValueError(f"Invalid inbox address: {self.inbox_address}")
            checksummed = Web3.to_checksum_address(self.inbox_address)
            if checksummed != self.inbox_address:
                # Use object.__setattr__ since dataclass is frozen
                object.__setattr__(self, 'inbox_address', checksummed)

    @classmethod
    def from_env(cls, network: str | None = None) -> "TracerConfig":
        """Load configuration from environment variables.

        Args:
            network: Network preset overriding the NETWORK variable

        Returns:
            TracerConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        network = network or os.environ.get("NETWORK", "sepolia")
        preset = NETWORK_PRESETS.get(network)

        l1_rpc_url = os.environ.get("L1_RPC_URL") or (preset.l1_rpc_url if preset else "")
        l2_rpc_url = (
            os.environ.get("L2_RPC_URL")
            or os.environ.get("ARBITRUM_RPC_URL")
            or (preset.l2_rpc_url if preset else "")
        )
        if network == "custom" and not (l1_rpc_url and l2_rpc_url):
            raise ValueError(
                "Custom network requires L1_RPC_URL and L2_RPC_URL environment variables"
            )

        query_config = QueryConfig(
            rpc_timeout=float(os.environ.get("RPC_TIMEOUT", "5")),
            request_budget=float(os.environ.get("REQUEST_BUDGET", "20")),
            lifecycle_lookback_blocks=int(os.environ.get("LIFECYCLE_LOOKBACK_BLOCKS", "500")),
            backtrace_lookback_blocks=int(os.environ.get("BACKTRACE_LOOKBACK_BLOCKS", "2000")),
            backtrace_chunk_size=int(os.environ.get("BACKTRACE_CHUNK_SIZE", "10")),
            base_fee_sample_blocks=int(os.environ.get("BASE_FEE_SAMPLE_BLOCKS", "10")),
        )

        indexer_config = IndexerConfig(
            db_path=os.environ.get("INDEX_DB_PATH", "data/tickets.db"),
            state_path=os.environ.get("INDEXER_STATE_PATH", "data/indexer_state.json"),
            loop_interval=float(os.environ.get("INDEXER_LOOP_SECONDS", "15")),
            retry_delay=float(os.environ.get("INDEXER_RETRY_SECONDS", "5")),
            reorg_depth=int(os.environ.get("INDEXER_REORG_DEPTH", "12")),
            l1_batch=int(os.environ.get("INDEXER_L1_BATCH", "20")),
            l2_batch=int(os.environ.get("INDEXER_L2_BATCH", "20")),
            log_chunk_size=int(os.environ.get("INDEXER_LOG_CHUNK_SIZE", "10")),
        )

        return cls(
            network=network,
            l1_rpc_url=l1_rpc_url,
            l2_rpc_url=l2_rpc_url,
            debug_rpc_url=os.environ.get("DEBUG_RPC_URL") or None,
            inbox_address=os.environ.get("INBOX_ADDRESS") or None,
            query=query_config,
            indexer=indexer_config,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Retryable Tracer Configuration")
        logger.info("=" * 60)

        preset = NETWORK_PRESETS.get(self.network)
        logger.info(f"Network: {preset.name if preset else self.network}")
        logger.info(f"  L1 RPC URL: {self.l1_rpc_url}")
        logger.info(f"  L2 RPC URL: {self.l2_rpc_url}")
        logger.info(f"  Debug RPC URL: {self.debug_rpc_url or '[NOT CONFIGURED]'}")
        if self.inbox_address:
            logger.info(f"  Inbox: {self.inbox_address}")

        logger.info("Query Limits:")
        logger.info(f"  RPC Timeout: {self.query.rpc_timeout} seconds")
        logger.info(f"  Request Budget: {self.query.request_budget} seconds")
        logger.info(f"  Lifecycle Lookback: {self.query.lifecycle_lookback_blocks} blocks")
        logger.info(
            f"  Backtrace Lookback: {self.query.backtrace_lookback_blocks} blocks "
            f"in chunks of {self.query.backtrace_chunk_size}"
        )

        logger.info("Indexer:")
        logger.info(f"  Database: {self.indexer.db_path}")
        logger.info(f"  Loop Interval: {self.indexer.loop_interval} seconds")
        logger.info(f"  Reorg Depth: {self.indexer.reorg_depth} blocks")

        logger.info("=" * 60)
