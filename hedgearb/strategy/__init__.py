"""
Strategy package.

- vwap: execution price estimation from book depth
- quotes: per-venue synthetic long/short prices
- controller: entry/exit state machine
"""

from hedgearb.strategy.controller import ArbitrageController, ControllerSnapshot, compute_gap, exit_reached
from hedgearb.strategy.quotes import QuoteBuilderConfig, SyntheticQuoteBuilder
from hedgearb.strategy.vwap import estimate

__all__ = [
    "ArbitrageController",
    "ControllerSnapshot",
    "compute_gap",
    "exit_reached",
    "QuoteBuilderConfig",
    "SyntheticQuoteBuilder",
    "estimate",
]
