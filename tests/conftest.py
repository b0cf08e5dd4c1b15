"""
Pytest configuration and fixtures.
Adds the repo root to sys.path so tests can import hedgearb without installing it.
"""

import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from hedgearb.config.config import ArbitrageConfig  # noqa: E402
from hedgearb.core.event_bus import EventBus  # noqa: E402
from hedgearb.market_data.price_store import PriceStore  # noqa: E402
from hedgearb.strategy.controller import ArbitrageController  # noqa: E402
from hedgearb.strategy.quotes import QuoteBuilderConfig, SyntheticQuoteBuilder  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, sec: float) -> None:
        self.now += sec


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def arb_config():
    return ArbitrageConfig(
        entry_threshold_pct=0.3,
        exit_reduction_pct=0.1,
        position_notional=100.0,
        half_spread=0.0005,
        order_timeout_sec=0.5,
    )


@pytest.fixture
def store():
    return PriceStore()


@pytest.fixture
def builder(arb_config):
    return SyntheticQuoteBuilder(QuoteBuilderConfig(
        target_notional=arb_config.position_notional,
        half_spread=arb_config.half_spread,
        depth_stale_after_sec=arb_config.depth_stale_after_sec,
    ))


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def controller(arb_config, store, builder, bus, clock):
    return ArbitrageController(arb_config, store, builder, "binance", "bitmart", bus=bus, clock=clock)
