"""
Execution layer: per-venue order gateways and two-leg placement.
"""

from hedgearb.execution.gateways import (
    BinanceFuturesGateway,
    BitmartFuturesGateway,
    OrderGateway,
    PaperGateway,
)
from hedgearb.execution.orchestrator import OrderExecutionOrchestrator

__all__ = [
    "BinanceFuturesGateway",
    "BitmartFuturesGateway",
    "OrderGateway",
    "PaperGateway",
    "OrderExecutionOrchestrator",
]
