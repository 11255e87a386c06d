"""
Retryable ticket tracer package.

Traces Arbitrum retryable tickets across L1 and L2 and explains where and
why a cross-layer message failed.
"""

from .config import TracerConfig
from .index_store import TicketIndexStore
from .models import TraceResult
from .tracer import InvalidTxHashError, RetryableTracer

__all__ = ["TracerConfig", "TicketIndexStore", "RetryableTracer", "InvalidTxHashError", "TraceResult"]
__version__ = "0.1.0"
