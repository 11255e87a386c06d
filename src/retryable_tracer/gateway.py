#!/usr/bin/env python3
"""Ledger query gateway.

Uniform, timeout-bounded access to the base layer (L1) and the execution
layer (L2). Every call is wrapped in asyncio.wait_for; callers decide
whether a failure is fatal.
"""

import asyncio
import logging
from typing import Any

from web3.exceptions import TransactionNotFound

from .models import BranchError, Layer, LocateResult, ReceiptSummary, RevertData
from .utils.hex_utility import normalize_log, to_bytes, to_hex
from .utils.provider_registry import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
BLOCK_FETCH_TIMEOUT = 3.0


def average_base_fee(base_fees: list[int]) -> int | None:
    """Integer average of the sampled base fees, None for an empty sample."""
    if not base_fees:
        return None
    return sum(base_fees) // len(base_fees)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if hasattr(obj, "get"):
        value = obj.get(name, default)
    else:
        value = getattr(obj, name, default)
    return default if value is None else value


def summarize_receipt(receipt: Any, layer: Layer, gas_limit: int | None = None) -> ReceiptSummary:
    """Normalise a web3 receipt into a ReceiptSummary."""
    to_address = _field(receipt, "to")
    effective_price = _field(receipt, "effectiveGasPrice")
    return ReceiptSummary(
        tx_hash=to_hex(_field(receipt, "transactionHash")),
        layer=layer,
        status=int(_field(receipt, "status", 0)),
        block_number=int(_field(receipt, "blockNumber", 0)),
        gas_used=int(_field(receipt, "gasUsed", 0)),
        gas_limit=gas_limit,
        from_address=_field(receipt, "from"),
        to_address=to_address,
        logs=tuple(normalize_log(log) for log in _field(receipt, "logs", [])),
        effective_gas_price=int(effective_price) if effective_price is not None else None,
    )


class LedgerGateway:
    """
    Timeout-bounded queries against both ledgers.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        timeout: float = DEFAULT_TIMEOUT,
        block_timeout: float = BLOCK_FETCH_TIMEOUT
    ) -> None:
        """
        Initialize the gateway.

        Args:
            registry: Providers for both ledgers
            timeout: Seconds allowed for a single ledger call
            block_timeout: Seconds allowed per block when sampling fees
        """
        self.registry = registry
        self.timeout = timeout
        self.block_timeout = block_timeout
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def locate(self, tx_hash: str) -> LocateResult:
        """
        Look a transaction up on both ledgers concurrently.

        A transaction missing from a ledger is not an error. Timeouts and
        transport failures are recorded per layer and never raised.

        Args:
            tx_hash: 0x-prefixed transaction hash

        Returns:
            LocateResult with the receipts found and per-layer errors
        """
        (l1_receipt, l1_error), (l2_receipt, l2_error) = await asyncio.gather(
            self._locate_on(Layer.L1, tx_hash),
            self._locate_on(Layer.L2, tx_hash),
        )

        if l1_receipt and l2_receipt:
            on_layer = Layer.BOTH
        elif l1_receipt:
            on_layer = Layer.L1
        elif l2_receipt:
            on_layer = Layer.L2
        else:
            on_layer = Layer.UNKNOWN

        errors = tuple(error for error in (l1_error, l2_error) if error is not None)
        self.logger.debug(f"Located {tx_hash} on {on_layer.value} ({len(errors)} errors)")
        return LocateResult(
            tx_hash=tx_hash,
            on_layer=on_layer,
            l1_receipt=l1_receipt,
            l2_receipt=l2_receipt,
            errors=errors,
        )

    async def _locate_on(self, layer: Layer, tx_hash: str) -> tuple[ReceiptSummary | None, BranchError | None]:
        try:
            return await self.get_receipt(layer, tx_hash), None
        except asyncio.TimeoutError:
            self.logger.warning(f"{layer.value} receipt lookup for {tx_hash} timed out")
            return None, BranchError(layer.value, f"Timed out after {self.timeout}s")
        except Exception as e:
            self.logger.warning(f"{layer.value} receipt lookup for {tx_hash} failed: {e}")
            return None, BranchError(layer.value, str(e) or type(e).__name__)

    async def get_receipt(self, layer: Layer, tx_hash: str) -> ReceiptSummary | None:
        """
        Fetch a receipt and the gas limit of its transaction.

        Returns:
            ReceiptSummary, or None if the ledger does not know the hash

        Raises:
            asyncio.TimeoutError: If the lookup exceeds the timeout
        """
        w3 = self.registry.get(layer)

        async def fetch() -> ReceiptSummary | None:
            try:
                receipt = await w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None
            if receipt is None:
                return None

            gas_limit = None
            try:
                tx = await w3.eth.get_transaction(tx_hash)
                gas_limit = int(_field(tx, "gas"))
            except Exception as e:
                self.logger.debug(f"Could not read gas limit of {tx_hash}: {e}")

            return summarize_receipt(receipt, layer, gas_limit)

        return await asyncio.wait_for(fetch(), self.timeout)

    async def block_number(self, layer: Layer) -> int:
        """Latest block number of a ledger."""
        return int(await asyncio.wait_for(self.registry.get(layer).eth.block_number, self.timeout))

    async def get_block(self, layer: Layer, block_number: int, timeout: float | None = None) -> Any:
        return await asyncio.wait_for(
            self.registry.get(layer).eth.get_block(block_number),
            timeout or self.timeout
        )

    async def block_timestamp(self, layer: Layer, block_number: int) -> int:
        block = await self.get_block(layer, block_number)
        return int(_field(block, "timestamp"))

    async def get_logs(
        self,
        layer: Layer,
        from_block: int,
        to_block: int,
        topics: list[Any],
        address: str | list[str] | None = None
    ) -> list[dict[str, Any]]:
        """
        Run eth_getLogs over an inclusive block range.

        Args:
            layer: Ledger to query
            from_block: First block of the range
            to_block: Last block of the range
            topics: Topic filter, positional as in eth_getLogs
            address: Optional emitter filter

        Returns:
            Normalised log dictionaries
        """
        filter_params: dict[str, Any] = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": topics,
        }
        if address is not None:
            filter_params["address"] = address

        logs = await asyncio.wait_for(self.registry.get(layer).eth.get_logs(filter_params), self.timeout)
        self.logger.debug(f"{layer.value} get_logs {from_block}-{to_block} returned {len(logs)} logs")
        return [normalize_log(log) for log in logs]

    async def _sample_blocks(self, count: int) -> list[Any]:
        latest = await self.block_number(Layer.L2)
        numbers = range(max(0, latest - count + 1), latest + 1)
        results = await asyncio.gather(
            *(self.get_block(Layer.L2, number, timeout=self.block_timeout) for number in numbers),
            return_exceptions=True
        )
        blocks = []
        for number, result in zip(numbers, results):
            if isinstance(result, BaseException):
                self.logger.debug(f"Skipping block {number} in fee sample: {result!r}")
                continue
            blocks.append(result)
        return blocks

    async def average_base_fee(self, count: int = 10) -> int | None:
        """
        Average base fee of the trailing L2 blocks.

        Blocks that fail or time out are left out of the sample.

        Returns:
            Integer average in wei, None if no block answered
        """
        blocks = await self._sample_blocks(count)
        fees = [int(fee) for block in blocks if (fee := _field(block, "baseFeePerGas")) is not None]
        return average_base_fee(fees)

    async def gas_price_history(self, count: int = 10) -> dict[str, Any]:
        """
        Base fee history of the trailing L2 blocks.

        Returns:
            Dictionary with per-block history and average, min and max
        """
        blocks = await self._sample_blocks(count)
        history = [
            {
                "block_number": int(_field(block, "number", 0)),
                "base_fee": int(fee),
                "timestamp": _field(block, "timestamp"),
            }
            for block in blocks
            if (fee := _field(block, "baseFeePerGas")) is not None
        ]
        history.sort(key=lambda entry: entry["block_number"])
        fees = [entry["base_fee"] for entry in history]
        return {
            "history": history,
            "average": average_base_fee(fees),
            "min": min(fees) if fees else None,
            "max": max(fees) if fees else None,
        }

    async def fetch_revert_data(self, tx_hash: str) -> RevertData:
        """
        Trace a transaction with the call tracer to recover its revert data.

        Raises:
            asyncio.TimeoutError: If the trace exceeds the timeout
            RuntimeError: If the endpoint answers with an error
        """
        w3 = self.registry.tracer
        response = await asyncio.wait_for(
            w3.provider.make_request("debug_traceTransaction", [tx_hash, {"tracer": "callTracer"}]),
            self.timeout
        )
        if error := response.get("error"):
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RuntimeError(f"debug_traceTransaction failed: {message}")

        result = response.get("result") or {}
        output = result.get("output")
        return RevertData(
            output=to_bytes(output) if output else None,
            error=result.get("error"),
        )
