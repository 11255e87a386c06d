import logging
from typing import Any

from web3 import AsyncWeb3

from ..models import Layer

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Holds the Web3 connections for both ledgers.

    Built once at startup and handed to every component that talks to a
    ledger, so tests can swap in fake endpoints without patching globals.
    """

    def __init__(self, l1: Any, l2: Any, debug: Any | None = None) -> None:
        """
        Initialize the registry.

        Args:
            l1: AsyncWeb3 instance for the base layer
            l2: AsyncWeb3 instance for the execution layer
            debug: Optional AsyncWeb3 instance exposing debug_traceTransaction
        """
        self.l1 = l1
        self.l2 = l2
        self.debug = debug

    @classmethod
    def from_urls(
        cls,
        l1_rpc_url: str,
        l2_rpc_url: str,
        debug_rpc_url: str | None = None,
        request_timeout: float = 30.0
    ) -> "ProviderRegistry":
        """Create HTTP providers for the configured endpoints."""
        def build(url: str) -> AsyncWeb3:
            return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(url, request_kwargs={"timeout": request_timeout}))

        logger.debug(f"Creating providers L1={l1_rpc_url} L2={l2_rpc_url} debug={debug_rpc_url}")
        return cls(
            l1=build(l1_rpc_url),
            l2=build(l2_rpc_url),
            debug=build(debug_rpc_url) if debug_rpc_url else None,
        )

    def get(self, layer: Layer) -> Any:
        match layer:
            case Layer.L1:
                return self.l1
            case Layer.L2:
                return self.l2
            case _:
                raise ValueError(f"No provider for layer {layer.value}")

    @property
    def tracer(self) -> Any:
        """Provider used for transaction traces, the L2 provider if no debug endpoint is set."""
        return self.debug or self.l2

    async def close(self) -> None:
        """Disconnect all providers."""
        for w3 in (self.l1, self.l2, self.debug):
            if w3 is None:
                continue
            provider = getattr(w3, "provider", None)
            if provider is not None and hasattr(provider, "disconnect"):
                try:
                    await provider.disconnect()
                except Exception as e:
                    logger.warning(f"Error disconnecting provider: {e}")
